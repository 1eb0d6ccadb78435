"""工具响应包络与统一错误处理。

每个工具操作都通过 `with_error_handling` 执行：操作体在进入各阶段时调用
`log(stage)`，失败时返回 "Error <operation> while <stage>: <cause>"。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

__all__ = [
    "ToolResponse",
    "success_response",
    "error_response",
    "describe_error",
    "with_error_handling",
]

_logger = logging.getLogger(__name__)

StageLogger = Callable[[str], None]


@dataclass(frozen=True)
class ToolResponse:
    text: str
    is_error: bool = False


def success_response(text: str) -> ToolResponse:
    return ToolResponse(text=text)


def error_response(text: str) -> ToolResponse:
    return ToolResponse(text=text, is_error=True)


def describe_error(exc: BaseException) -> str:
    """Human-readable cause; exceptions without a message read "Unknown error"."""
    message = str(exc).strip()
    return message or "Unknown error"


def with_error_handling(operation: str, body: Callable[[StageLogger], str]) -> ToolResponse:
    """Run ``body`` and wrap its result or failure into a ToolResponse.

    ``body`` receives a ``log(stage)`` callable; the most recent stage is
    named in the error text ("while <stage>"), omitted when none was reached.
    Failures never propagate to the caller.
    """
    stage = ""

    def log(next_stage: str) -> None:
        nonlocal stage
        stage = next_stage
        _logger.info("%s: %s", operation, next_stage)

    _logger.info("Started %s", operation)
    try:
        text = body(log)
    except Exception as exc:
        where = f"{operation} while {stage}" if stage else operation
        cause = describe_error(exc)
        _logger.error("Failed %s: %s", where, cause)
        _logger.debug("traceback for %s", operation, exc_info=True)
        return error_response(f"Error {where}: {cause}")
    finally:
        _logger.info("Finished %s", operation)

    return success_response(text)
