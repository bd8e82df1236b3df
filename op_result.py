"""Result values returned at the engine and registry call boundaries.

External calls never raise into the update logic.  They log at their own
boundary and hand back an :class:`OpResult` describing what went wrong, so
that one container's failure cannot abort a pass.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import requests


class ErrorKind(Enum):
    ENGINE = 'engine'          # engine or registry answered with an error status
    NETWORK = 'network'        # socket / IO failure reaching the endpoint
    PARSE = 'parse'            # malformed JSON or manifest
    UNEXPECTED = 'unexpected'


@dataclass(frozen=True)
class OpResult:
    """Outcome of a single external call."""
    ok: bool
    value: Any = None
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, value: Any = None) -> 'OpResult':
        return cls(True, value)

    @classmethod
    def failure(cls, error: str, kind: ErrorKind = ErrorKind.UNEXPECTED) -> 'OpResult':
        return cls(False, None, error, kind)


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map an exception raised by an external call onto the error taxonomy."""
    # requests' JSONDecodeError is also a RequestException, so parse errors go first
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ErrorKind.PARSE
    if isinstance(exc, requests.HTTPError):
        return ErrorKind.ENGINE
    if isinstance(exc, (requests.RequestException, OSError)):
        return ErrorKind.NETWORK
    return ErrorKind.UNEXPECTED


def describe_error(exc: BaseException) -> str:
    """Human-readable message, including the engine's own explanation when present."""
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        try:
            message = exc.response.json().get('message')
        except ValueError:
            message = None
        if message:
            return f"{exc.response.status_code}: {message}"
    return str(exc) or exc.__class__.__name__


def guarded(operation: str, func: Callable[[], Any], logger: logging.Logger,
            level: int = logging.ERROR) -> OpResult:
    """Run ``func`` and convert any exception into a failed OpResult.

    The failure is logged with the operation name and its error kind.
    """
    try:
        return OpResult.success(func())
    except Exception as e:
        kind = classify_exception(e)
        message = describe_error(e)
        logger.log(level, f"{operation} failed ({kind.value} error): {message}")
        return OpResult.failure(message, kind)
