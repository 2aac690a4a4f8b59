"""stategrid CLI subcommands."""
