"""
Core monitoring components:
- credentials: API key pool with rotation
- registry: tracked wallet set
- normalizer: provider frames -> transaction records
- metadata_cache: token metadata cache
- dispatcher: single-slot record delivery
"""
