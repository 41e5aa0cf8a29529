"""
E-Invoice Kernel

Shared infrastructure for e-invoice submission and consolidation:
- Typed exceptions with machine-readable codes
- Structured JSON logging with request-scoped context
- Injectable clock (deterministic time travel in tests)
- SQLAlchemy base, engine/session management and document model
"""

__version__ = "0.1.0"
