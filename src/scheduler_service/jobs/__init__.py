"""Job model, payload schemas, handlers and retry policy."""
