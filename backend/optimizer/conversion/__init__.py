from .service import ConversionService
from .models import Artifact, CodecOutput

__all__ = ["ConversionService", "Artifact", "CodecOutput"]
