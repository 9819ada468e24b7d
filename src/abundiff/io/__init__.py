"""Bootstrap replicate input."""

from abundiff.io.bootstrap import BootstrapLoader, BootstrapSet, InMemoryBootstrapLoader

__all__ = ['BootstrapLoader', 'BootstrapSet', 'InMemoryBootstrapLoader']
