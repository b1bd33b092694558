"""Domain modules: scheduling, runs, usage, browser provider, notifications."""
