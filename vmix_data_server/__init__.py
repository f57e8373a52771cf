"""
vmix_data_server

vMix Data Server: named key/value profiles served to vMix over HTTP
(JSON / XML / plain text) with live change pushes over WebSocket.
"""

# -----------------------------
# App identity / version
# -----------------------------
APP_NAME = "vMix Data Server"
APP_VERSION = "1.2.0"
APP_DISPLAY = f"{APP_NAME} v{APP_VERSION}"

__version__ = APP_VERSION
