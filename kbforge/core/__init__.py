"""Core layer: configuration, logging, errors, events and the job scheduler."""
