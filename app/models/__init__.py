from app.models.photo import Photo
from app.models.analysis import Analysis
from app.models.suggestion import Suggestion
from app.models.processed_media import ProcessedMedia

__all__ = ["Photo", "Analysis", "Suggestion", "ProcessedMedia"]
