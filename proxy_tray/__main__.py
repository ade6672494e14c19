"""Entry point for Copilot Proxy Tray.

Usage:
    python -m proxy_tray            Launch the tray application
"""


def main() -> None:
    """Launch the tray app."""
    from proxy_tray.app import App

    app = App()
    app.run()


if __name__ == "__main__":
    main()
