"""Persistence: SQLite tables and FAISS partitions."""
