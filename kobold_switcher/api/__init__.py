"""HTTP routes exposed by the switcher."""
