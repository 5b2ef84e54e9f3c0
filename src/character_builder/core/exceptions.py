"""
Exception hierarchy for the Character Builder core.

Provides structured error handling with specific error types for the version
store, the draft controller and the storage boundary.
"""

import functools
import inspect
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


class CharacterBuilderError(Exception):
    """Base exception for all Character Builder errors."""

    user_message = "Something went wrong."

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        component: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.component = component

    def __str__(self) -> str:
        """String representation of the error."""
        base_msg = f"[{self.component or 'CharacterBuilder'}] {self.message}"
        if self.error_code:
            base_msg = f"[{self.error_code}] {base_msg}"
        return base_msg

    def with_context(self, **context: Any) -> "CharacterBuilderError":
        """Attach operation context without overwriting what is already set."""
        for key, value in context.items():
            if value is not None:
                self.details.setdefault(key, value)
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "component": self.component,
            "details": self.details,
            "user_message": self.user_message,
        }


class ConfigurationError(CharacterBuilderError):
    """Exception raised when configuration is invalid or missing."""

    pass


class ValidationError(CharacterBuilderError):
    """Exception raised when a snapshot fails schema validation."""

    user_message = "The character data is not valid."

    def __init__(self, field: str, value: Any, reason: str, **kwargs: Any) -> None:
        details = {"field": field, "value": str(value)[:200], "reason": reason}
        details.update(kwargs.pop("details", None) or {})
        super().__init__(
            f"Validation failed for field '{field}': {reason}",
            error_code="VALIDATION_ERROR",
            details=details,
            **kwargs,
        )


class NotFoundError(CharacterBuilderError):
    """Exception raised when a character or version does not exist."""

    user_message = "That character or version no longer exists."

    def __init__(self, entity: str, entity_id: str, **kwargs: Any) -> None:
        details = {"entity": entity, "entity_id": entity_id}
        details.update(kwargs.pop("details", None) or {})
        super().__init__(
            f"{entity} not found: {entity_id}",
            error_code="NOT_FOUND",
            details=details,
            **kwargs,
        )


class ConflictError(CharacterBuilderError):
    """Exception raised when a concurrent writer won a race."""

    user_message = "This change was already resolved elsewhere. Please retry."

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "CONFLICT")
        super().__init__(message, **kwargs)


class StaleGenerationError(ConflictError):
    """Exception raised when a generation result arrives after it was cancelled."""

    def __init__(self, generation_id: str, **kwargs: Any) -> None:
        details = {"generation_id": generation_id}
        details.update(kwargs.pop("details", None) or {})
        super().__init__(
            f"Generation {generation_id} is no longer active",
            error_code="STALE_GENERATION",
            details=details,
            **kwargs,
        )


class AuthorizationError(CharacterBuilderError):
    """Exception raised when the acting principal does not own the character."""

    user_message = "You are not allowed to change this character."

    def __init__(self, actor_id: str, character_id: str, **kwargs: Any) -> None:
        super().__init__(
            f"Actor {actor_id} does not own character {character_id}",
            error_code="FORBIDDEN",
            details={"actor_id": actor_id, "character_id": character_id},
            **kwargs,
        )


class BusyError(CharacterBuilderError):
    """Exception raised when a generation is already in flight."""

    user_message = "A draft is already being generated. Please wait."

    def __init__(self, character_id: str, **kwargs: Any) -> None:
        super().__init__(
            f"Character {character_id} already has a generation in flight",
            error_code="BUSY",
            details={"character_id": character_id},
            **kwargs,
        )


class InferenceError(CharacterBuilderError):
    """Exception raised when the inference collaborator fails."""

    user_message = "The assistant could not produce a draft."


class TransientStoreError(CharacterBuilderError):
    """Exception raised when the backend fails in a way worth retrying."""

    user_message = "The service is temporarily unavailable. Please retry."


class TransactionContentionError(TransientStoreError):
    """Exception raised when a transaction lost an optimistic concurrency check."""

    def __init__(self, path: str, **kwargs: Any) -> None:
        super().__init__(
            f"Transaction contention on {path}",
            error_code="CONTENTION",
            details={"path": path},
            **kwargs,
        )


# Error handling utilities


def wrap_errors(operation: str, component: str) -> Callable[[F], F]:
    """Decorator adding operation context to errors raised by async methods.

    Known errors keep their type and gain ``operation``, ``character_id`` and
    ``version_id`` details, taken from the call's arguments by name. Anything
    else is wrapped in a ``TransientStoreError`` so callers only ever see this
    hierarchy.
    """

    def decorator(func: F) -> F:
        signature = inspect.signature(func)

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                arguments = signature.bind_partial(*args, **kwargs).arguments
            except TypeError:
                arguments = kwargs
            context = {
                "operation": operation,
                "character_id": arguments.get("character_id"),
                "version_id": arguments.get("version_id"),
            }
            try:
                return await func(*args, **kwargs)
            except CharacterBuilderError as e:
                if e.component is None:
                    e.component = component
                raise e.with_context(**context)
            except Exception as e:
                raise TransientStoreError(
                    f"{operation} failed: {e}",
                    error_code="STORE_ERROR",
                    details={k: v for k, v in context.items() if v is not None},
                    component=component,
                ) from e

        return wrapper  # type: ignore

    return decorator
