"""dagflow - Event-driven workflow orchestration.

Stores workflow graphs, starts runs when domain events match a trigger node,
and walks the graph with branching, templated parameters and suspend/resume.
"""

__version__ = "0.1.0"
