"""
Tasseo Engine - Credit-Gated Cup Reading Pipeline

Queue workers that read coffee-grounds photos with vision and language models,
billing each reading against a credit ledger and refunding it when the
attempt fails.
"""

__version__ = "0.1.0"
