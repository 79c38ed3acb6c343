"""External collaborators and supporting services for the analysis pipeline."""
