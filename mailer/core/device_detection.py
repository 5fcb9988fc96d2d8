"""
User agent classification for click events
"""
from user_agents import parse as parse_user_agent

UNKNOWN_DEVICE = "Unknown"


def detect_device_type(user_agent: str) -> str:
    """Return Desktop, Mobile, Tablet, Bot or Unknown for a user agent string"""
    if not user_agent:
        return UNKNOWN_DEVICE

    try:
        ua = parse_user_agent(user_agent)
    except Exception:
        return UNKNOWN_DEVICE

    if ua.is_mobile:
        return "Mobile"
    if ua.is_tablet:
        return "Tablet"
    if ua.is_bot:
        return "Bot"
    if ua.is_pc:
        return "Desktop"
    return UNKNOWN_DEVICE
