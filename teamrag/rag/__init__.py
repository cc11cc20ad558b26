"""Team RAG (Retrieval-Augmented Generation)

This package provides document chunking, embedding, chunk storage, retrieval,
context assembly and the interaction monitoring / learning loop.
"""
