"""
Shared pieces: pose/lock/command types, heading math, YAML config, JSON logging.
"""
