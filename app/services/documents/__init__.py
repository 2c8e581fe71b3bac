"""Case document services.

- TextChunker: overlapping character-window chunking
- DocumentChunkService: validated chunk persistence and similarity search
- DocumentRagService: chunk embedding and retrieval orchestration
- DocumentExtractionService: durable text extraction jobs
- DocumentInsightsService: durable case-aware insight jobs
"""

from app.services.documents.document_chunk_service import DocumentChunkService
from app.services.documents.document_extraction_service import DocumentExtractionService
from app.services.documents.document_insights_service import DocumentInsightsService
from app.services.documents.document_rag_service import DocumentRagService
from app.services.documents.text_chunker import TextChunker

__all__ = [
    "DocumentChunkService",
    "DocumentExtractionService",
    "DocumentInsightsService",
    "DocumentRagService",
    "TextChunker",
]
