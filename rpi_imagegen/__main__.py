"""Entry point for `python -m rpi_imagegen`."""

from rpi_imagegen.cli import app

if __name__ == "__main__":
    app()
