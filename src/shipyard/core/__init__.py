"""Core building blocks: configuration, console, results, the task graph and
the artifact boundary."""
