"""Ralph Runner: drive an autonomous coding agent through a checkpointed development loop."""

__version__ = "0.1.0"
