"""nodeflow - workflow graph engine.

Runs graphs of prompt, code, condition and file nodes with bounded loops,
fan-in convergence and crash-safe run records.
"""

__version__ = "0.1.0"
