"""Retry, concurrency, and budget policies for execute-phase task attempts."""
