"""
MedEvidence - Literature-grounded answers to clinical questions

Answers free-text medical questions with citation-backed narratives built
from PubMed records, optional web results, and user-supplied evidence.

Features:
- Query translation to PubMed-ready English keywords
- Rate-limited, cached, retrying PubMed E-utilities client
- Escalating relevance filtering of retrieved articles
- Conversation-aware LLM synthesis with inline citation markers
- Background task execution with status polling
"""

__version__ = "0.1.0"
__author__ = "MedEvidence Team"
