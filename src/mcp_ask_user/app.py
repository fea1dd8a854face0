"""FastMCP server exposing the ask_user tool to agents."""

from __future__ import annotations

import inspect
import logging
import time
from collections import defaultdict
from contextlib import suppress
from functools import wraps
from typing import Any, Callable, Optional

from fastmcp import Context, FastMCP

from . import rich_logger
from .asker import request_user_input
from .config import get_settings
from .storage import ensure_mailbox, mailbox_status

logger = logging.getLogger(__name__)

TOOL_METRICS: defaultdict[str, dict[str, int]] = defaultdict(lambda: {"calls": 0, "errors": 0})

ASK_USER_DESCRIPTION = """Ask the user a question and wait for their free-form text response.

Use this tool when you need explicit user input, confirmation, or clarification before proceeding
with a task. The user sees the question in a separate terminal running `mcp-ask-user respond` and
types a reply there.

Guidelines:
- Use it for questions that genuinely require a decision from the user
- Be specific and clear; put short context in `title`
- The user may answer `cancel` to decline

The call waits for the reply (default timeout: 300 seconds)."""


class ToolExecutionError(Exception):
    def __init__(self, error_type: str, message: str, *, recoverable: bool = True, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.error_type = error_type
        self.recoverable = recoverable
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


def _record_tool_error(tool_name: str, exc: Exception) -> None:
    logger.warning(
        "tool_error",
        extra={
            "tool": tool_name,
            "error": type(exc).__name__,
            "error_message": str(exc),
        },
    )


def _origin_from_context(ctx: Any) -> dict[str, str]:
    """Collect whatever request identifiers the MCP context can provide."""
    origin: dict[str, str] = {}
    for key, attr in (("session_id", "session_id"), ("request_id", "request_id"), ("client_id", "client_id")):
        # Some identifiers raise outside an active request rather than returning None
        with suppress(Exception):
            value = getattr(ctx, attr, None)
            if value:
                origin[key] = str(value)
    return origin


def _instrument_tool(tool_name: str) -> Callable[[Any], Any]:
    def decorator(func: Any) -> Any:
        signature = inspect.signature(func)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            metrics = TOOL_METRICS[tool_name]
            metrics["calls"] += 1
            bound = signature.bind_partial(*args, **kwargs)
            ctx = bound.arguments.get("ctx")

            settings = get_settings()
            log_ctx = None
            if settings.tools_log_enabled:
                try:
                    log_ctx = rich_logger.ToolCallContext(
                        tool_name=tool_name,
                        kwargs={k: v for k, v in bound.arguments.items() if k != "ctx"},
                        session=_origin_from_context(ctx).get("session_id"),
                        start_time=time.perf_counter(),
                    )
                    rich_logger.log_tool_call_start(log_ctx)
                except Exception:
                    # Logging errors should not break tool execution
                    log_ctx = None

            result = None
            error: Optional[Exception] = None
            try:
                result = await func(*args, **kwargs)
            except ToolExecutionError as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                error = exc
                raise
            except ValueError as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                wrapped_exc = ToolExecutionError(
                    "INVALID_ARGUMENT",
                    f"Invalid argument value: {exc}.",
                    recoverable=True,
                    data={"tool": tool_name, "error_detail": str(exc)},
                )
                error = wrapped_exc
                raise wrapped_exc from exc
            except OSError as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                wrapped_exc = ToolExecutionError(
                    "MAILBOX_IO_ERROR",
                    f"Mailbox I/O failed: {exc}",
                    recoverable=False,
                    data={"tool": tool_name, "error_detail": str(exc)},
                )
                error = wrapped_exc
                raise wrapped_exc from exc
            finally:
                if log_ctx is not None:
                    with suppress(Exception):
                        log_ctx.end_time = time.perf_counter()
                        log_ctx.result = result
                        log_ctx.error = error
                        log_ctx.success = error is None
                        rich_logger.log_tool_call_end(log_ctx)
            return result

        return wrapper

    return decorator


def build_mcp_server() -> FastMCP:
    """Create and configure the FastMCP server instance."""
    instructions = (
        "You are the MCP Ask User server. Call `ask_user` when you need a decision, confirmation, "
        "or clarification from the human operator; the call returns once they answer, decline, "
        "or the timeout passes."
    )
    mcp = FastMCP(name="mcp-ask-user", instructions=instructions)

    @mcp.tool(name="health_check", description="Return basic readiness information for the Ask User server.")
    @_instrument_tool("health_check")
    async def health_check(ctx: Context) -> dict[str, Any]:
        """Report the environment, mailbox location and number of pending questions."""
        settings = get_settings()
        mailbox = ensure_mailbox(settings)
        status = mailbox_status(mailbox)
        return {
            "status": "ok",
            "environment": settings.environment,
            "mailbox_dir": status["mailbox_dir"],
            "pending_questions": status["pending_questions"],
        }

    @mcp.tool(name="ask_user", description=ASK_USER_DESCRIPTION)
    @_instrument_tool("ask_user")
    async def ask_user(
        ctx: Context,
        question: str,
        title: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """
        Ask the human operator a question and wait for the reply.

        Parameters
        ----------
        question : str
            The question to ask. Be specific and clear.
        title : Optional[str]
            Short context label shown above the question.
        timeout : Optional[float]
            Seconds to wait for the reply (default from ASK_USER_DEFAULT_TIMEOUT_SECONDS).

        Returns
        -------
        dict
            {"responded": bool, "response": str, "cancelled": bool, "reason"?: str}
            `reason` is only present when `cancelled` is true.
        """
        # Re-fetch settings at call time so tests that mutate env + clear cache take effect
        settings = get_settings()
        mailbox = ensure_mailbox(settings)
        with suppress(Exception):
            await ctx.info(f"Waiting for the user to answer{f' ({title})' if title else ''}.")
        outcome = await request_user_input(
            mailbox,
            question,
            title=title,
            timeout_seconds=timeout if timeout is not None else float(settings.mailbox.default_timeout_seconds),
            origin=_origin_from_context(ctx),
            poll_interval_seconds=settings.mailbox.poll_interval_seconds,
        )
        return outcome.to_payload()

    return mcp
