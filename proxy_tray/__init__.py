"""Copilot Proxy Tray: desktop shell for a local Copilot API proxy.

Supervises the proxy worker process, signs in to GitHub with the device
authorization flow, and keeps the tray icon and main window in step with
the service state.
"""

__version__ = "1.0.0"
__app_name__ = "Copilot Proxy"
