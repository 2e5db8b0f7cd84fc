"""Phase state machine, checkpoints, run history, and phase bodies."""
