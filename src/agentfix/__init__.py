"""
agentfix - health check and repair for the remote-monitoring agent service.
"""

__version__ = "0.1.0"
