"""
Pediatric RAG - retrieval-augmented answers from the Nelson Textbook of Pediatrics.

This package provides the orchestration engine: query analysis, filtered vector
retrieval with re-ranking, a validated step workflow around external generation
services, clinical validation and confidence scoring.
"""

__version__ = "0.1.0"

# Re-export main classes for easy import
from .pipeline.medical_rag import MedicalRAG
from .config import RAGSettings, setup_medical_rag

__all__ = [
    "MedicalRAG",
    "RAGSettings",
    "setup_medical_rag",
]
