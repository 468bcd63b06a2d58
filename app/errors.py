# file: app/errors.py
from __future__ import annotations


class NotFound(LookupError):
    """A deal, email, meeting, action or suggestion does not resolve in the caller's scope."""


class ConfigResolutionFailure(RuntimeError):
    """Playbook, health config or detection config could not be loaded."""


class ExternalServiceFailure(RuntimeError):
    """An outside service (the LLM) errored or returned something unusable."""


class LLMNotReady(ExternalServiceFailure): ...


class StoreError(RuntimeError):
    """The store RPC server answered with an error payload."""
