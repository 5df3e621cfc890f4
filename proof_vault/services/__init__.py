"""
Proof services: image fingerprinting, vision descriptions and the proof engine.
"""
