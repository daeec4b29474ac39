from .graph_store import KnowledgeGraph
from .index_store import RelevanceIndex

__all__ = ["KnowledgeGraph", "RelevanceIndex"]
