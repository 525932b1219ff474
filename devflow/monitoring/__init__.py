"""Engine metrics."""
