"""
MedEvidence Pipelines

Query translation, relevance filtering, conversation context and answer
synthesis, composed by EvidencePipeline.
"""
