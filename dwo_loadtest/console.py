"""Console and file logging shared by every engine component"""

import logging
import sys
from datetime import datetime

import urllib3

# Suppress warnings for unverified HTTPS requests
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


class Colors:
    """ANSI color codes for terminal output"""
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[0;34m'
    CYAN = '\033[0;36m'
    PURPLE = '\033[0;35m'
    NC = '\033[0m'  # No Color


def setup_logging(log_level: str = 'INFO', log_file: str = None) -> logging.Logger:
    """Setup logging configuration"""
    level = getattr(logging, log_level.upper(), logging.INFO)
    handlers = []
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    else:
        handlers.append(logging.StreamHandler(sys.stderr))
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s',
        handlers=handlers,
        force=True
    )
    return logging.getLogger('dwo_loadtest')


class ComponentLogger:
    """Colored console output plus logger records, tagged by component"""

    def __init__(self, name: str = 'dwo_loadtest', quiet: bool = False):
        self.logger = logging.getLogger(name)
        self.quiet = quiet

    def _emit(self, color: str, message: str, component: str):
        if self.quiet:
            return
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        print(f"{color}[{component}]{Colors.NC} {timestamp} - {message}")

    def log_debug(self, message: str, component: str = "MAIN"):
        self.logger.debug(f"[{component}] {message}")

    def log_info(self, message: str, component: str = "MAIN"):
        """Enhanced logging with component identification"""
        self._emit(Colors.GREEN, message, component)
        self.logger.info(f"[{component}] {message}")

    def log_warn(self, message: str, component: str = "MAIN"):
        """Enhanced warning logging"""
        self._emit(Colors.YELLOW, message, component)
        self.logger.warning(f"[{component}] {message}")

    def log_error(self, message: str, component: str = "MAIN"):
        """Enhanced error logging"""
        self._emit(Colors.RED, message, component)
        self.logger.error(f"[{component}] {message}")
