"""
Pydantic models for content, proofs, and API payloads.
"""
