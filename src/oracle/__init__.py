"""Oracle update pipeline: chain access, remote signing, execution and scheduling."""
