"""KoboldCpp switcher: supervise a single local model server process."""
