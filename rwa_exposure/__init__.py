"""Exposure strategies, optimizer and bundle orchestration for tokenized RWAs."""

__version__ = "0.1.0"
