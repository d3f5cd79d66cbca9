"""Turns a follow graph into a runnable simulator script."""
