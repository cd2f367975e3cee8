"""Job planning, execution and progress tracking."""
