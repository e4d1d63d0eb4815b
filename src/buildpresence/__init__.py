"""
buildpresence - Build Lifecycle Presence Relay

Relays package build phases reported by a build hook into the desktop
presence service over its local IPC socket.
"""

__version__ = "0.1.0"
__author__ = "buildpresence developers"
