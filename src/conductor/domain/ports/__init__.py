"""Ports to external collaborators."""

from conductor.domain.ports.credential_resolver import CredentialResolver
from conductor.domain.ports.event_sink import EventSink

__all__ = ["CredentialResolver", "EventSink"]
