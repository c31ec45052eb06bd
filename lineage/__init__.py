"""Batch lineage - live to dressed edges and yield."""

from lineage.graph import BatchRelationshipGraph
from lineage.models import YieldReport

__all__ = ["BatchRelationshipGraph", "YieldReport"]
