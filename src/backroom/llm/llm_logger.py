"""
LLM interaction logging for oracle calls.

Provides detailed logging of LLM requests and responses for debugging,
cost tracking, and auditing purposes.
"""

import json
import logging
import logging.handlers
import time
from datetime import datetime, timezone
from typing import Optional

from backroom.config import Settings, settings
from backroom.llm.base import LLMResponse

logger = logging.getLogger(__name__)


class LLMLogger:
    """
    Logger for LLM oracle interactions.

    Logs requests, responses, token usage, and errors to a separate log file
    when LLM logging is enabled in configuration.
    """

    def __init__(self, config: Optional[Settings] = None):
        """Initialize LLM logger with a dedicated file handler."""
        self.config = config or settings
        self.llm_logger = logging.getLogger("backroom.llm.interactions")
        self.enabled = self.config.llm_logging_enabled

        if self.enabled and self.config.log_file_enabled and not self.llm_logger.handlers:
            self._setup_file_handler()

    def _setup_file_handler(self) -> None:
        """Setup dedicated file handler for LLM logs."""
        llm_dir = self.config.log_directory / "llm"
        llm_dir.mkdir(parents=True, exist_ok=True)

        handler = logging.handlers.RotatingFileHandler(
            llm_dir / "requests.log",
            maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(
            logging.Formatter(
                fmt="[%(asctime)s] [%(levelname)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

        self.llm_logger.addHandler(handler)
        self.llm_logger.setLevel(logging.INFO)
        self.llm_logger.propagate = False

    def log_request(
        self,
        operation: str,
        model: str,
        prompt: str,
        max_tokens: int,
        subject: str = "",
    ) -> str:
        """
        Log an oracle request.

        Args:
            operation: Oracle operation (e.g. "pair_similarity")
            model: Model name
            prompt: User prompt sent to the model
            max_tokens: Maximum tokens requested
            subject: Identifier of what is being analyzed

        Returns:
            str: Request ID for correlating with the response
        """
        request_id = f"{operation}_{int(time.time() * 1000)}"
        if not self.enabled or not self.config.llm_log_requests:
            return request_id

        prompt_preview = prompt[:500] + "..." if len(prompt) > 500 else prompt
        log_entry = {
            "type": "request",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "operation": operation,
            "subject": subject,
            "model": model,
            "max_tokens": max_tokens,
            "prompt_preview": prompt_preview,
            "prompt_length": len(prompt),
        }
        self.llm_logger.info(f"REQUEST: {json.dumps(log_entry)}")
        return request_id

    def log_response(self, request_id: str, response: LLMResponse) -> None:
        """Log an oracle response with token usage."""
        if not self.enabled or not self.config.llm_log_responses:
            return

        log_entry = {
            "type": "response",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": response.model,
            "finish_reason": response.finish_reason,
            "content_length": len(response.content),
            "duration_ms": round(response.duration_ms, 2),
        }
        if self.config.llm_log_tokens:
            log_entry["tokens"] = {
                "prompt": response.prompt_tokens,
                "completion": response.completion_tokens,
                "total": response.total_tokens,
            }
        if response.content:
            log_entry["content_preview"] = (
                response.content[:200] + "..."
                if len(response.content) > 200
                else response.content
            )
        self.llm_logger.info(f"RESPONSE: {json.dumps(log_entry)}")

    def log_error(self, request_id: str, error: BaseException) -> None:
        """Log an oracle failure."""
        if not self.enabled:
            return

        log_entry = {
            "type": "error",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "error_type": type(error).__name__,
            "error_message": str(error),
        }
        self.llm_logger.error(f"ERROR: {json.dumps(log_entry)}")
