"""Engine adapters that execute one task through an agent CLI."""
