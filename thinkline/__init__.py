"""thinkline: streaming chat with a local model, reasoning kept apart from the answer."""
