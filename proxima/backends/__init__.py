"""Concrete hypervisor backends: HTTPS management API and host shell."""

from __future__ import annotations

from .api import ApiBackend
from .shell import HostShellBackend

__all__ = ['ApiBackend', 'HostShellBackend']
