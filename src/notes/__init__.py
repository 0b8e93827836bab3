"""Notes, review stages, and the note store used by the scheduler."""
