"""Voice and text chat over a relayed language model with streamed speech."""

__version__ = "0.1.0"
