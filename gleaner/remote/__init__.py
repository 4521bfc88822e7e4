"""Clients for the remote annotation service."""

from .base import BaseRemote
from .hypothesis import HypothesisClient
from .mock import MockRemote

__all__ = ["BaseRemote", "HypothesisClient", "MockRemote"]
