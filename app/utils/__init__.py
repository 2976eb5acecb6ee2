"""
Utility modules.
"""

from app.utils.device import DeviceInfo, device_fingerprint, parse_user_agent

__all__ = ["DeviceInfo", "device_fingerprint", "parse_user_agent"]
