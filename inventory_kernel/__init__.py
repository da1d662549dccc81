"""
Inventory Kernel

The persistence core of marketplace inventory sync:
- Append-only quantity and location ledgers with per-item sequences
- Change log with a bidirectional undo chain
- Transactional outbox feeding the marketplace worker
- Per-provider sync state on every inventory item
"""

__version__ = "0.1.0"
