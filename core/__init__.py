"""Core module - shared models and ambient services for the batch engine.

This module contains the entity models, typed errors, settings, per-batch
locking, audit trail and observability used by every engine package.

Business rules live in the engine packages (calculation, inventory, lineage,
processing, reconciliation), never here.
"""

__version__ = "1.0.0"
