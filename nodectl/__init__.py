"""Controller that keeps a proxy node's handlers, users, limits and reports in step with its panel."""

__version__ = "0.1.0"

__all__ = [
    "config",
    "controller",
    "inboundbuilder",
    "outboundbuilder",
    "panel",
    "service",
    "userbuilder",
]