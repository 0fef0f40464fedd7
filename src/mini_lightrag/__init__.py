from importlib.metadata import version

try:
    __version__ = version("mini-lightrag")
except Exception:
    __version__ = "unknown"
