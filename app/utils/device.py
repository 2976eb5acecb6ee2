"""
Device metadata derived from the User-Agent header.

Only coarse labels are extracted (browser family, OS family, device type); the
raw header is stored alongside for auditing.
"""

import hashlib
import re
from dataclasses import dataclass

_BROWSERS: tuple[tuple[str, str], ...] = (
    (r"Edg/", "Edge"),
    (r"OPR/|Opera", "Opera"),
    (r"Firefox/", "Firefox"),
    (r"Chrome/", "Chrome"),
    (r"Safari/", "Safari"),
)

_OPERATING_SYSTEMS: tuple[tuple[str, str], ...] = (
    (r"Windows", "Windows"),
    (r"iPhone|iPad|iPod", "iOS"),
    (r"Android", "Android"),
    (r"Mac OS X|Macintosh", "macOS"),
    (r"Linux", "Linux"),
)


@dataclass
class DeviceInfo:
    browser: str
    os: str
    device_type: str

    @property
    def name(self) -> str:
        return f"{self.browser} on {self.os}"


def parse_user_agent(user_agent: str | None) -> DeviceInfo:
    ua = user_agent or ""

    browser = next((label for pattern, label in _BROWSERS if re.search(pattern, ua)), "Unknown")
    os_name = next(
        (label for pattern, label in _OPERATING_SYSTEMS if re.search(pattern, ua)), "Unknown"
    )

    if re.search(r"iPad|Tablet", ua):
        device_type = "tablet"
    elif re.search(r"Mobile|iPhone|Android", ua):
        device_type = "mobile"
    elif ua:
        device_type = "desktop"
    else:
        device_type = "unknown"

    return DeviceInfo(browser=browser, os=os_name, device_type=device_type)


def device_fingerprint(user_agent: str | None, ip_address: str | None) -> str:
    """Stable hash of user agent and IP, used to spot the same device across logins."""
    return hashlib.sha256(f"{user_agent or ''}-{ip_address or ''}".encode()).hexdigest()
