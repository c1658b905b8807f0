import logging
import os
import re
import sys
from datetime import datetime, timedelta
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from colorama import Fore, Style, init
from dotenv import load_dotenv

# Load environment variables if .env file exists
load_dotenv(override=False)

# Initialize colorama for Windows compatibility
init(autoreset=True)

# Sensitive patterns to filter out
SENSITIVE_PATTERNS = [
    (r'(api[_-]?key[\s]*[=:]\s*)[\w\-]+', r'\1[REDACTED]'),
    (r'(access[_-]?token[\s]*[=:]\s*)[\w\-]+', r'\1[REDACTED]'),
    (r'(token[\s]*[=:]\s*)[\w\-]+', r'\1[REDACTED]'),
    (r'(secret[\s]*[=:]\s*)[\w\-]+', r'\1[REDACTED]'),
    (r'("(?:api_key|token|secret)"\s*:\s*")[^"]*', r'\1[REDACTED]'),
]

LOG_COLORS = {
    'DEBUG': Fore.CYAN,
    'INFO': Fore.GREEN,
    'WARNING': Fore.YELLOW,
    'ERROR': Fore.RED,
    'CRITICAL': Fore.RED + Style.BRIGHT,
}

COMPONENT_COLORS = {
    'timestamp': Fore.BLUE,
    'module': Fore.MAGENTA,
    'reset': Style.RESET_ALL,
}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('1', 'true', 'yes', 'on')


class SensitiveDataFilter(logging.Filter):
    """Filter to redact credentials (api keys, access tokens, bridge secret) from log messages."""

    def filter(self, record):
        message = str(record.msg)
        for pattern, replacement in SENSITIVE_PATTERNS:
            message = re.sub(pattern, replacement, message, flags=re.IGNORECASE)
        record.msg = message

        if record.args:
            filtered_args = []
            for arg in record.args:
                filtered_arg = str(arg)
                for pattern, replacement in SENSITIVE_PATTERNS:
                    filtered_arg = re.sub(pattern, replacement, filtered_arg, flags=re.IGNORECASE)
                filtered_args.append(filtered_arg)
            record.args = tuple(filtered_args)

        return True


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colors to log levels and components for console output."""

    def __init__(self, fmt=None, datefmt=None, enable_colors=True):
        super().__init__(fmt, datefmt)
        self.enable_colors = enable_colors and self._supports_color()

    def _supports_color(self):
        """Check if the terminal supports color output."""
        force_color = os.environ.get('FORCE_COLOR', '').lower()
        if force_color in ['1', 'true', 'yes', 'on']:
            return True
        elif force_color in ['0', 'false', 'no', 'off']:
            return False

        # NO_COLOR is the de-facto standard opt out
        if os.environ.get('NO_COLOR'):
            return False

        if hasattr(sys.stdout, 'isatty') and sys.stdout.isatty():
            term = os.environ.get('TERM', '')
            if 'color' in term.lower() or term in ['xterm', 'xterm-256color', 'screen', 'screen-256color']:
                return True

        return False

    def format(self, record):
        if not self.enable_colors:
            return super().format(record)

        original_format = super().format(record)

        level_color = LOG_COLORS.get(record.levelname, '')
        reset = COMPONENT_COLORS['reset']

        # Assumes the default format: [timestamp] LEVEL in module: message
        if '[' in original_format and ']' in original_format:
            original_format = re.sub(
                r'(\[.*?\])',
                f"{COMPONENT_COLORS['timestamp']}\\1{reset}",
                original_format,
                count=1
            )

        if record.levelname in original_format:
            original_format = original_format.replace(
                record.levelname,
                f'{level_color}{record.levelname}{reset}',
                1
            )

        if record.module in original_format:
            original_format = original_format.replace(
                f' in {record.module}:',
                f" in {COMPONENT_COLORS['module']}{record.module}{reset}:"
            )

        return original_format


def cleanup_old_logs(log_dir: Path, retention_days: int):
    """Remove log files older than retention_days."""
    if not log_dir.exists():
        return

    cutoff_date = datetime.now() - timedelta(days=retention_days)

    for log_file in log_dir.glob("*.log*"):
        try:
            file_mtime = datetime.fromtimestamp(log_file.stat().st_mtime)
            if file_mtime < cutoff_date:
                log_file.unlink()
        except OSError:
            # Another process may have rotated or removed it already
            continue


def setup_logging():
    """Initialize the logging configuration from environment variables."""
    log_to_file = _env_flag('LOG_TO_FILE', 'False')
    log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_dir = os.getenv('LOG_DIR', 'log')
    log_format = os.getenv('LOG_FORMAT', '[%(asctime)s] %(levelname)s in %(module)s: %(message)s')
    log_retention = int(os.getenv('LOG_RETENTION', '14'))
    log_colors = _env_flag('LOG_COLORS', 'True')

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))
    root_logger.handlers = []

    console_formatter = ColoredFormatter(log_format, enable_colors=log_colors)
    file_formatter = logging.Formatter(log_format)

    sensitive_filter = SensitiveDataFilter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(console_formatter)
    console_handler.addFilter(sensitive_filter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        log_path = Path(log_dir)
        log_path.mkdir(exist_ok=True)

        cleanup_old_logs(log_path, log_retention)

        # Daily rotation
        log_file = log_path / f"bridge_{datetime.now().strftime('%Y-%m-%d')}.log"
        file_handler = TimedRotatingFileHandler(
            filename=str(log_file),
            when='midnight',
            interval=1,
            backupCount=log_retention,
            encoding='utf-8'
        )
        file_handler.setFormatter(file_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

    # websockets logs every handshake failure and keepalive at INFO/DEBUG
    logging.getLogger('websockets').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)


def highlight_url(url: str, text: str = None) -> str:
    """
    Create a highlighted URL string with bright colors and styling.

    Args:
        url: The URL to highlight
        text: Optional text to display instead of the URL

    Returns:
        Formatted string with colors (if enabled) or plain text
    """
    log_colors = _env_flag('LOG_COLORS', 'True')
    force_color = os.getenv('FORCE_COLOR', '').lower() in ['1', 'true', 'yes', 'on']

    if not log_colors and not force_color:
        return text or url

    bright_cyan = Fore.CYAN + Style.BRIGHT
    bright_white = Fore.WHITE + Style.BRIGHT
    reset = Style.RESET_ALL

    if text and text != url:
        return f"{bright_white}{text}{reset} -> {bright_cyan}{url}{reset}"
    return f"{bright_cyan}{url}{reset}"


def log_startup_banner(logger_instance, title: str, url: str, separator_char: str = "=", width: int = 60):
    """
    Log a highlighted startup banner with the listening address.

    Args:
        logger_instance: Logger instance to use
        title: Main title text
        url: Address to highlight
        separator_char: Character for separator lines
        width: Width of the banner
    """
    log_colors = _env_flag('LOG_COLORS', 'True')
    force_color = os.getenv('FORCE_COLOR', '').lower() in ['1', 'true', 'yes', 'on']

    if not log_colors and not force_color:
        logger_instance.info(separator_char * width)
        logger_instance.info(title)
        logger_instance.info(f"Listening on: {url}")
        logger_instance.info(separator_char * width)
        return

    bright_green = Fore.GREEN + Style.BRIGHT
    bright_yellow = Fore.YELLOW + Style.BRIGHT
    reset = Style.RESET_ALL

    logger_instance.info(f"{bright_yellow}{separator_char * width}{reset}")
    logger_instance.info(f"{bright_green}{title}{reset}")
    logger_instance.info(f"Listening on: {highlight_url(url)}")
    logger_instance.info(f"{bright_yellow}{separator_char * width}{reset}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance configured with the module name and color support

    Environment Variables:
        LOG_COLORS: Enable/disable colored console output (default: True)
        LOG_LEVEL: Set logging level (default: INFO)
        LOG_TO_FILE: Enable file logging (default: False)
        LOG_DIR: Directory for log files (default: log)
        LOG_FORMAT: Custom log format string
        LOG_RETENTION: Days to retain log files (default: 14)
    """
    return logging.getLogger(name)


# Initialize logging on import
setup_logging()
