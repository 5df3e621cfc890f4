"""
AI Proof Vault - tamper-evident proofs binding an image to an AI description

Fingerprints uploaded images, asks a vision model to describe them, stores the
resulting proof record in a content-addressed store and keeps a durable local
index from fingerprint to content address for later verification.
"""

__version__ = "0.1.0"
__author__ = "AI Proof Vault Team"
__description__ = "Image to AI description proof generation and verification"
