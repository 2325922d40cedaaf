"""imagegen-kit - client-side plumbing for AI image-generation backends."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("imagegen-kit")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"
