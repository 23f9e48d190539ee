"""TubeGuide - London Underground query routing assistant

Routes free-text Tube questions to line specialists, coordinates
multi-specialist answers and keeps a self-summarizing conversation log.
"""

__version__ = "0.1.0"

from tubeguide.app import TubeGuide  # noqa: E402
from tubeguide.config import TubeGuideSettings, get_settings  # noqa: E402

__all__ = ["TubeGuide", "TubeGuideSettings", "get_settings", "__version__"]
