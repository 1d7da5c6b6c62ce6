#!/usr/bin/env python3
"""
WhatsApp relay bootstrap:
- Creates a local virtual environment in .venv if missing
- Installs this project in editable mode from pyproject.toml (no requirements.txt)
- Downloads the Chromium build Playwright uses to drive WhatsApp Web
- Serves wa_relay.main:app with uvicorn; pair the account at /connect

Usage: python run.py
"""
import os
import subprocess
import sys
from pathlib import Path
import venv


ROOT = Path(__file__).parent.resolve()
VENV_DIR = ROOT / ".venv"


def venv_python() -> Path:
    if os.name == "nt":
        return VENV_DIR / "Scripts" / "python.exe"
    return VENV_DIR / "bin" / "python"


def ensure_venv():
    if not VENV_DIR.exists():
        print("Creating virtual environment at .venv ...")
        venv.EnvBuilder(with_pip=True).create(str(VENV_DIR))
    else:
        print("Virtual environment exists.")


def pip_install():
    print("Installing dependencies ...")
    if not (ROOT / "pyproject.toml").exists():
        print("pyproject.toml not found.")
        sys.exit(1)
    py = str(venv_python())
    subprocess.check_call([py, "-m", "pip", "install", "-U", "pip", "wheel", "setuptools"])
    subprocess.check_call([py, "-m", "pip", "install", "-e", str(ROOT)])
    subprocess.check_call([py, "-m", "playwright", "install", "chromium"])


def run_server():
    host = os.getenv("HOST", "0.0.0.0")
    port = os.getenv("PORT", "3000")
    print(f"Starting relay at http://{host}:{port}/connect ...")
    cmd = [str(venv_python()), "-m", "uvicorn", "wa_relay.main:app", "--host", host, "--port", port]
    subprocess.check_call(cmd)


if __name__ == "__main__":
    ensure_venv()
    pip_install()
    run_server()
