"""skillbench - comparative testing and iterative improvement of skill prompts."""

__version__ = "0.1.0"
