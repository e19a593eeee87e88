"""SignGate command-line interface."""
