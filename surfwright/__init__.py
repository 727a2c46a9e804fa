"""SurfWright: deterministic browser-automation control plane.

Plans of browser steps run over the Chrome DevTools Protocol while session and
target metadata live in a file-backed store shared by concurrent processes.
"""

from __future__ import annotations

__version__ = "0.4.0"

__all__ = ["__version__"]
