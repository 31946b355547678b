"""
Proof Anchor - Content Analysis to On-Chain Proof Workflow

Takes submitted image, video or text content through analysis, derives a
deterministic proof fingerprint from the analysis record, and registers that
fingerprint against a wallet address on a blockchain registry.
"""

__version__ = "1.0.0"
__author__ = "Proof Anchor Team"
__description__ = "Content analysis to on-chain proof workflow"
