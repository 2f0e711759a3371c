"""
Cross-platform locations for application data and logs
"""

import platform
from pathlib import Path


def get_app_data_directory() -> Path:
    """Get application data directory"""
    system = platform.system()
    
    if system == "Windows":
        app_data = Path.home() / "AppData" / "Local" / "mapmerge3d"
    elif system == "Darwin":  # macOS
        app_data = Path.home() / "Library" / "Application Support" / "mapmerge3d"
    else:  # Linux and others
        app_data = Path.home() / ".local" / "share" / "mapmerge3d"
    
    app_data.mkdir(parents=True, exist_ok=True)
    return app_data


def get_logs_directory() -> Path:
    """Get logs directory"""
    logs_dir = get_app_data_directory() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def get_platform_name() -> str:
    """Get platform name"""
    return platform.system()
