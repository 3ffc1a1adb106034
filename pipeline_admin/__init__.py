"""Admin CLI for the pipeline run history."""
