"""Shared datastructures and semantic type aliases."""
