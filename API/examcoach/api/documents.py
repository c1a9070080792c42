from fastapi import APIRouter, File, UploadFile

from examcoach.core.errors import UploadTooLargeError
from examcoach.core.settings import settings
from examcoach.ingest.document_text import extract_document_text
from examcoach.schemas.session import UploadDocumentResponse

router = APIRouter(tags=["documents"])


@router.post("/upload-document")
async def upload_document(file: UploadFile = File(...)):
    limit = settings.max_upload_bytes
    if file.size is not None and file.size > limit:
        raise UploadTooLargeError(details={"size": file.size, "limit": limit})
    # One byte past the limit is enough to reject an upload of unknown size.
    data = await file.read(limit + 1)
    extracted = extract_document_text(file.filename or "", data)
    response = UploadDocumentResponse(
        filename=file.filename or "",
        size=len(data),
        file_type=extracted.file_type,
        source_kind=extracted.source_kind,
        content=extracted.text,
        word_count=extracted.word_count,
        character_count=extracted.character_count,
    )
    return response.model_dump(mode="json", by_alias=True)
