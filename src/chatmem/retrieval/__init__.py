"""Lexical, vector and hybrid retrieval over memory chunks."""
