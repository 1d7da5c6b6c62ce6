from typing import Optional

USER_SERVER = "s.whatsapp.net"


def format_phone(phone: Optional[str], country_code: str = "55") -> Optional[str]:
    """
    Reduce a user-supplied phone number to the digits WhatsApp expects.

    - Strips '+', spaces, dashes, parentheses and any other non-digit
    - National numbers (10 or 11 digits) get the default country code prepended
    - Returns None for empty input or input without digits
    """
    if phone is None:
        return None
    cleaned = "".join(ch for ch in str(phone) if ch.isdigit())
    if not cleaned:
        return None
    if len(cleaned) in (10, 11) and country_code:
        cleaned = f"{country_code}{cleaned}"
    return cleaned


def to_jid(phone: Optional[str], country_code: str = "55") -> Optional[str]:
    """
    Convert '5511999999999' (or '+55 11 99999-9999') to '5511999999999@s.whatsapp.net'.
    If value already looks like a JID with '@', return as-is.
    """
    if not phone:
        return None
    s = str(phone).strip()
    if "@" in s:
        return s
    digits = format_phone(s, country_code)
    if not digits:
        return None
    return f"{digits}@{USER_SERVER}"


def jid_to_phone(jid: Optional[str]) -> Optional[str]:
    """
    '5511999999999@s.whatsapp.net' -> '5511999999999'. Device suffixes ('5511...:12@s.whatsapp.net')
    are dropped. Group and other non-user JIDs are returned without their server part.
    """
    if not jid:
        return None
    local = str(jid).split("@", 1)[0]
    local = local.split(":", 1)[0]
    return local or None
