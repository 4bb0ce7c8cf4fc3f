"""
Error Handling Utilities

Exception taxonomy for the workflow engine plus retry logic used to
re-apply session mutations after a concurrent modification.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Type

logger = logging.getLogger(__name__)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class WorkflowEngineError(Exception):
    """Base exception for workflow engine errors"""

    code = "workflow_engine_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class RetryableError(WorkflowEngineError):
    """Error that should be retried"""
    code = "retryable_error"


class NonRetryableError(WorkflowEngineError):
    """Error that should not be retried"""
    code = "non_retryable_error"


class ConfigurationError(NonRetryableError):
    """Caller input or definition data is invalid"""
    code = "configuration_error"


class UnknownWorkflowType(ConfigurationError):
    code = "unknown_workflow_type"

    def __init__(self, workflow_type: str, available: list[str]):
        super().__init__(
            f"Unknown workflow type: '{workflow_type}'. "
            f"Available types: {', '.join(available)}",
            workflow_type=workflow_type,
            available_types=available,
        )


class MissingRequiredOption(ConfigurationError):
    code = "missing_required_option"

    def __init__(self, workflow_type: str, missing: list[str]):
        super().__init__(
            f"Workflow '{workflow_type}' requires options: {', '.join(missing)}",
            workflow_type=workflow_type,
            missing_options=missing,
        )


class EmptyScope(ConfigurationError):
    code = "empty_scope"

    def __init__(self, scope_root: str, include: list[str], exclude: list[str]):
        super().__init__(
            f"No files matched under {scope_root}",
            scope_root=scope_root,
            include_patterns=include,
            exclude_patterns=exclude,
        )


class InvalidDefinition(ConfigurationError):
    code = "invalid_definition"


class SessionNotFound(NonRetryableError):
    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", session_id=session_id)


class SessionClosed(NonRetryableError):
    code = "session_closed"

    def __init__(self, session_id: str, status: str):
        super().__init__(
            f"Session {session_id} is {status} and cannot be modified",
            session_id=session_id,
            status=status,
        )


class InvalidCompletedAction(NonRetryableError):
    code = "invalid_completed_action"


class InvalidOperation(NonRetryableError):
    code = "invalid_operation"


class InvalidOrExpiredToken(NonRetryableError):
    code = "invalid_or_expired_token"


class StateIntegrityError(NonRetryableError):
    """Persisted session failed its integrity check"""
    code = "state_integrity_error"


class LockTimeoutError(RetryableError):
    """Session lock could not be acquired in time"""
    code = "lock_timeout"


class ConcurrentModification(RetryableError):
    """Session was saved by another writer since it was loaded"""
    code = "concurrent_modification"

    def __init__(self, session_id: str, expected: int, actual: int):
        super().__init__(
            f"Session {session_id} changed concurrently "
            f"(expected version {expected}, found {actual})",
            session_id=session_id,
            expected_version=expected,
            actual_version=actual,
        )


# ============================================================================
# RETRY LOGIC
# ============================================================================

@dataclass
class RetryPolicy:
    """Retry policy configuration"""
    max_attempts: int = 3
    initial_delay_ms: int = 50
    max_delay_ms: int = 1000
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple[Type[Exception], ...] = (ConcurrentModification, LockTimeoutError)


class RetryHandler:
    """Handles retry logic with exponential backoff and jitter"""

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()

    def execute(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Execute function with retry logic

        Args:
            func: Function to execute
            *args: Function arguments
            **kwargs: Function keyword arguments

        Returns:
            Function result

        Raises:
            Exception: Last exception if all retries fail
        """
        last_exception = None

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except self.policy.retryable_exceptions as e:
                last_exception = e
                if attempt == self.policy.max_attempts:
                    break
                delay_ms = self._calculate_delay(attempt)
                logger.info(f"Retrying after {e.__class__.__name__} (attempt {attempt}, {delay_ms}ms)")
                time.sleep(delay_ms / 1000.0)

        raise last_exception

    def _calculate_delay(self, attempt: int) -> int:
        """
        Calculate delay for retry attempt

        Args:
            attempt: Attempt number (1-indexed)

        Returns:
            Delay in milliseconds
        """
        delay = self.policy.initial_delay_ms * (self.policy.exponential_base ** (attempt - 1))
        delay = min(delay, self.policy.max_delay_ms)

        if self.policy.jitter:
            # Random jitter between 0% and 25% of delay
            delay = delay + random.uniform(0, delay * 0.25)

        return int(delay)
