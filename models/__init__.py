from .threads import Thread, Base
from .transcripts import Transcript

__all__ = ["Thread", "Transcript", "Base"]
