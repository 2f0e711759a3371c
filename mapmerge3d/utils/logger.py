"""Logging utilities"""

import logging
import sys
from pathlib import Path
from typing import Optional

from mapmerge3d.utils.platform_utils import get_logs_directory as _platform_logs_directory

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_FILE_NAME = "mapmerge3d.log"

# Path of the file handler attached by the last setup_logger() call
_log_file_path: Optional[Path] = None


def _is_writable(log_dir: Path) -> bool:
    test_file = log_dir / ".test_write"
    try:
        test_file.write_text("test")
        test_file.unlink()
        return True
    except OSError:
        return False


def get_logs_directory() -> Path:
    """Get logs directory with fallbacks"""
    # Platform-specific location first
    try:
        log_dir = _platform_logs_directory()
        if _is_writable(log_dir):
            return log_dir
    except OSError:
        pass
    
    # Fallback 1: local logs directory
    try:
        log_dir = Path("logs")
        log_dir.mkdir(parents=True, exist_ok=True)
        if _is_writable(log_dir):
            return log_dir
    except OSError:
        pass
    
    # Fallback 2: current directory
    return Path(".")


def setup_logger(
    name: str,
    level: int = logging.INFO,
    log_to_file: bool = True
) -> logging.Logger:
    """
    Setup logger with consistent formatting
    
    Args:
        name: Logger name (usually the package or __name__)
        level: Console log level
        log_to_file: Also write DEBUG-level records to mapmerge3d.log
        
    Returns:
        Configured logger. Calling this twice for the same name does not
        duplicate handlers.
    """
    global _log_file_path
    
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG if log_to_file else level)
    
    if not logger.handlers:
        formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
        
        # Console handler
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)
        
        if log_to_file:
            try:
                log_file = get_logs_directory() / LOG_FILE_NAME
                file_handler = logging.FileHandler(str(log_file), mode='a', encoding='utf-8')
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
                
                _log_file_path = log_file
                logger.debug(f"Logging to: {log_file.absolute()}")
            except OSError as e:
                # Continue with console logging only
                logger.warning(f"Could not set up file logging: {e}")
    
    return logger


def get_log_file_path() -> Optional[Path]:
    """Get the path to the log file"""
    return _log_file_path
