"""
Tunnel Fleet

Reverse-tunnel orchestration: agents keep auto-healing SSH reverse tunnels to
discovered coordination servers, and the control plane tracks the fleet.
"""

__version__ = "1.0.0"
