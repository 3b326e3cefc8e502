"""
Codeweaver Logging System

Clean terminal output for production + detailed file logging for debugging.
Generation calls and cache storage operations can additionally be written as
JSONL records (settings.debug_api_calls / settings.debug_storage).
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Any, Dict, List


class NarrativeLogger:
    """
    Two-mode logging system:
    - Terminal: Clean, timestamped key events only
    - Debug file: Full detailed logs for troubleshooting
    """

    def __init__(self, debug_mode: bool = False, settings=None, quiet: bool = False):
        self.debug_mode = debug_mode
        self.settings = settings
        self.quiet = quiet
        self.api_calls_log: Optional[Path] = None
        self.storage_log: Optional[Path] = None

        # Create debug directory if debug flags are enabled
        if settings and (settings.debug_storage or settings.debug_api_calls):
            debug_log_dir = Path(settings.debug_log_dir)
            debug_log_dir.mkdir(parents=True, exist_ok=True)

            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            if settings.debug_storage:
                self.storage_log = debug_log_dir / f"storage_{timestamp}.jsonl"
            if settings.debug_api_calls:
                self.api_calls_log = debug_log_dir / f"api_calls_{timestamp}.jsonl"

        # Setup file logger for debug mode
        if debug_mode:
            log_dir = Path("logs")
            log_dir.mkdir(exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_file = log_dir / f"codeweaver_debug_{timestamp}.txt"

            self.file_logger = logging.getLogger("codeweaver_debug")
            self.file_logger.setLevel(logging.DEBUG)

            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            self.file_logger.addHandler(file_handler)

            print(f"📝 Debug mode enabled. Logging to: {log_file}")

    def _timestamp(self) -> str:
        return datetime.now().strftime("%H:%M:%S")

    def _terminal_log(self, emoji: str, message: str, color: str = ""):
        """Print clean log to terminal"""
        if self.quiet:
            return

        colors = {
            "green": "\033[92m",
            "blue": "\033[94m",
            "yellow": "\033[93m",
            "red": "\033[91m",
            "cyan": "\033[96m",
            "reset": "\033[0m"
        }

        color_code = colors.get(color, "")
        reset = colors["reset"] if color_code else ""

        print(f"{color_code}[{self._timestamp()}] {emoji} {message}{reset}")

    def _debug_log(self, level: str, component: str, message: str, data: Optional[dict] = None):
        """Write detailed log to debug file"""
        if self.debug_mode and hasattr(self, 'file_logger'):
            log_msg = f"{component} | {message}"
            if data:
                log_msg += f" | Data: {data}"

            log_func = getattr(self.file_logger, level.lower(), self.file_logger.info)
            log_func(log_msg)

    # ===== Terminal Output Methods =====

    def request_received(self, kind: str, cache_key: str):
        self._terminal_log("📨", f"Request: {kind} ({cache_key[-8:]})", "cyan")
        self._debug_log("info", "REQUEST", f"Received {kind}", {"cache_key": cache_key})

    def request_completed(self, kind: str, cache_key: str, source: str, duration: Optional[float] = None):
        """Log where a request's artifact came from (cache, generated, fallback)"""
        msg = f"Served {kind} from {source} ({cache_key[-8:]})"
        if duration:
            msg += f" in {duration:.1f}s"
        degraded = source not in ("cache", "generated", "generated_simplified")
        self._terminal_log("⚠️" if degraded else "✅", msg, "yellow" if degraded else "green")
        self._debug_log("info", "REQUEST", f"Completed {kind}", {
            "cache_key": cache_key,
            "source": source,
            "duration": duration
        })

    def validation_rejected(self, template: str, codes: List[str], simplified: bool = False):
        msg = f"Validation rejected {template}{' (simplified)' if simplified else ''}: {', '.join(codes)}"
        self._terminal_log("🧪", msg, "yellow")
        self._debug_log("warning", "VALIDATION", msg, {"codes": codes})

    def error(self, component: str, message: str, error: Exception = None):
        """Log error"""
        msg = f"Error in {component}: {message}"
        if error:
            msg += f" ({type(error).__name__})"
        self._terminal_log("⚠️", msg, "red")
        self._debug_log("error", component, message, {
            "error_type": type(error).__name__ if error else None,
            "error_message": str(error) if error else None
        })

    # ===== Debug Logging Methods =====

    def _write_json_log(self, log_file: Path, data: Dict[str, Any]):
        """Write structured JSON log entry"""
        try:
            with open(log_file, 'a') as f:
                json.dump(data, f, default=str)
                f.write('\n')
        except OSError as e:
            self.error("LOGGER", f"Failed to write JSON log: {e}")

    def generation_call(self, provider: str, model: Optional[str], prompt_tokens: int = 0,
                        completion_tokens: int = 0, latency: Optional[float] = None,
                        status: str = "success", attempt: int = 1, template: str = ""):
        """Log a generation API call with token usage"""
        if not self.settings or not self.settings.debug_api_calls:
            return

        total_tokens = prompt_tokens + completion_tokens
        latency_str = f" in {latency:.1f}s" if latency else ""
        msg = f"API {provider}/{model or '?'} [{template} #{attempt}]: {total_tokens} tokens{latency_str} {status}"
        success = status == "success"
        self._terminal_log("🤖" if success else "⚠️", msg, "green" if success else "yellow")

        if self.api_calls_log:
            self._write_json_log(self.api_calls_log, {
                "timestamp": datetime.now().isoformat(),
                "type": "generation_call",
                "provider": provider,
                "model": model,
                "template": template,
                "attempt": attempt,
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": total_tokens,
                "latency_seconds": latency,
                "status": status,
            })

    def cache_operation(self, operation: str, path: str, size_bytes: int = 0,
                        duration: Optional[float] = None, status: str = "success"):
        """Log durable cache write/read/delete operations"""
        if not self.settings or not self.settings.debug_storage:
            return

        duration_str = f" in {duration*1000:.0f}ms" if duration else ""
        msg = f"Cache {operation.upper()} {path} ({size_bytes} bytes){duration_str} {status}"
        self._terminal_log("💾", msg, "yellow" if status != "success" else "blue")

        if self.storage_log:
            self._write_json_log(self.storage_log, {
                "timestamp": datetime.now().isoformat(),
                "type": "cache_operation",
                "operation": operation,
                "path": path,
                "size_bytes": size_bytes,
                "duration_seconds": duration,
                "status": status,
            })


def init_logger(debug_mode: bool = False, settings=None) -> NarrativeLogger:
    """Initialize logger with specific debug mode and settings"""
    return NarrativeLogger(debug_mode=debug_mode, settings=settings)
