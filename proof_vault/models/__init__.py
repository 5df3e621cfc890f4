"""
Proof record, verdict and API response models.
"""
