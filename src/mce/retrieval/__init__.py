from mce.retrieval.ranker import RetrievalRanker, keyword_overlap

__all__ = ["RetrievalRanker", "keyword_overlap"]
