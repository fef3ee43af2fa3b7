try:
    from ._version import version as __version__  # populated by setuptools-scm
except ModuleNotFoundError:
    __version__ = "0.0.0"

from .trials import Trial, TrialKey
from .controller import TrialReconciler, Result

__all__ = ["__version__", "Trial", "TrialKey", "TrialReconciler", "Result"]
