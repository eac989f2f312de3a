"""
Cortex - tiered memory store for assistant loops.

Package structure:
- core: config, logging, error taxonomy
- memory: tiers, summarizer, refresh controller, facade
- memory.backends: JSON file and SQLite persistence adapters
"""

__version__ = "0.1.0"
