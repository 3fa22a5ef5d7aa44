"""WireGuard building blocks: UDP binds, control messages, routing trie, cookies and key helpers."""

__version__ = "0.1.0"