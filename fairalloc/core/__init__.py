"""
fairalloc core.

Entropy, VRF, commit-reveal, allocation, verification and storage.
"""
