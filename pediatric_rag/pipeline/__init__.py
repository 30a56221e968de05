"""
Main pipeline components for the pediatric RAG engine.

This package contains the boundary API that ties together admission control,
the response cache and the workflow.
"""

from .medical_rag import MedicalRAG

__all__ = [
    "MedicalRAG",
]
