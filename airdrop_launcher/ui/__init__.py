from .base_ui import BaseUI
from .launch_ui import LaunchUI

__all__ = ["BaseUI", "LaunchUI"]
