"""Instruction model, puppet lifecycle and the execution engine."""
