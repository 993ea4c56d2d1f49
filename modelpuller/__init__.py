"""Pull model files from storage and relay load and unload calls to a model runtime."""

__version__ = "0.1.0"

__all__ = ["config", "dotpath", "modelstate", "puller", "server"]