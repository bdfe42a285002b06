"""Node pool migration orchestrator: scale, cordon, drain and scale down with live progress"""

__version__ = "0.1.0"
