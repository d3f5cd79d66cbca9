"""Puppet transports and the RPC operations built on them."""
