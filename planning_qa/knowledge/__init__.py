"""Knowledge module for retrieval over municipal planning documents.

Provides query classification, language detection and translation, hybrid
semantic + keyword retrieval and the agentic retrieval loop used to ground
answers in planning-document chunks.
"""

from planning_qa.knowledge.agent import AgenticController
from planning_qa.knowledge.classifier import classify
from planning_qa.knowledge.models import (
    Chunk,
    Decision,
    IterationRecord,
    QueryClassification,
    QueryType,
    RAGResponse,
    ScoredCandidate,
    TranslationResult,
)
from planning_qa.knowledge.retriever import HybridRetriever, rerank
from planning_qa.knowledge.store import ChunkStore
from planning_qa.knowledge.translator import QueryTranslator

__all__ = [
    "AgenticController",
    "Chunk",
    "ChunkStore",
    "Decision",
    "HybridRetriever",
    "IterationRecord",
    "QueryClassification",
    "QueryTranslator",
    "QueryType",
    "RAGResponse",
    "ScoredCandidate",
    "TranslationResult",
    "classify",
    "rerank",
]
