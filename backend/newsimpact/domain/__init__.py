"""Pure domain models: predictions, time windows, accuracy scoring, missed-reason classification."""
