"""Live-socket tests: a real relay on a free localhost port."""
