"""Built-in step tools, one per step kind."""
