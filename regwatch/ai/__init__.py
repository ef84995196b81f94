"""LLM collaborators and the agents built on them."""
