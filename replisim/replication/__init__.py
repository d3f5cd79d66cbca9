"""Follow graph model and the hops-limited expectation engine."""
