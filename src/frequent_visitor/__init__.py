"""
Top-level package for the frequent-visitor tagging agent.

The runtime worker lives under `frequent_visitor.visitor_agent`; stream
adapters shared by the worker and its tests live under
`frequent_visitor.event_bus`.
"""

__all__: list[str] = []
