"""General-purpose helpers used around the tree core."""
