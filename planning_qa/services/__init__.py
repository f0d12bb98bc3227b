"""Service layer for PlanningQA.

External model clients, retry policy and the question-answering pipeline
(``planning_qa.services.municipal_qa``).
"""

from planning_qa.services.openai_client import ChatCompletionClient, Completion
from planning_qa.services.retry import RetryPolicy

__all__ = [
    "ChatCompletionClient",
    "Completion",
    "RetryPolicy",
]
