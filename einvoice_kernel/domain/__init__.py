"""Kernel domain layer: the injectable clock.  No ORM, no network."""

from einvoice_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "DeterministicClock", "SystemClock"]
