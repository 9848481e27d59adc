from .playwright_wrapper import PlaywrightWrapper

__all__ = ["PlaywrightWrapper"]
