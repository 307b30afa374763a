from .runtime import ProxyRuntime

__all__ = ["ProxyRuntime"]
