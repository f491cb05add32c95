# chatpipe/core/attachments.py
"""
Pending-input attachments.

Attachments exist only until a message is sent. At send time code and text
content is inlined into the message text; every attachment is reduced to a
small display record that is stored with the message instead.
"""

import os
import re
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from chatpipe.core.models import Attachment, AttachmentType

IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp", "svg"}
DOCUMENT_EXTENSIONS = {"pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx"}
CODE_EXTENSIONS = {"js", "jsx", "ts", "tsx", "py", "java", "cpp", "c", "css", "html"}
TEXT_EXTENSIONS = {"txt", "md", "json", "xml", "csv"}

_CODE_CHARS_RE = re.compile(r"[{}\[\]();]")
_CODE_KEYWORD_RE = re.compile(
    r"^\s*(function|const|let|var|class|import|export|def|public|private|package|interface)",
    re.MULTILINE,
)


def _extension(file_name: str) -> str:
    return os.path.splitext(file_name or "")[1].lstrip(".").lower()


def detect_attachment_type(text: str, file_name: str = "") -> AttachmentType:
    ext = _extension(file_name)

    if ext in IMAGE_EXTENSIONS:
        return AttachmentType.IMAGE
    if ext in DOCUMENT_EXTENSIONS:
        return AttachmentType.DOCUMENT

    text = text or ""
    looks_like_code = bool(_CODE_CHARS_RE.search(text) or _CODE_KEYWORD_RE.search(text))
    if (len(text.split("\n")) > 3 and looks_like_code) or ext in CODE_EXTENSIONS:
        return AttachmentType.CODE

    if ext in TEXT_EXTENSIONS:
        return AttachmentType.TEXT

    return AttachmentType.FILE


def create_pasted_attachment(
    type: AttachmentType,
    name: str,
    content: Optional[str],
    preview: Optional[str] = None,
) -> Attachment:
    return Attachment(
        id=f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}",
        type=AttachmentType(type),
        name=name,
        content=content,
        preview=preview,
    )


def display_record(att: Attachment) -> Dict[str, Any]:
    record: Dict[str, Any] = {"id": att.id, "type": AttachmentType(att.type).value, "name": att.name}
    if att.preview:
        record["preview"] = att.preview
    return record


def inline_attachments(message: str, attachments: Sequence[Attachment]) -> Tuple[str, List[Dict[str, Any]]]:
    """
    Return (message text with code/text content appended, display records).
    """
    text = (message or "").strip()
    for att in attachments:
        att_type = AttachmentType(att.type)
        if att_type == AttachmentType.CODE and att.content:
            text += f"\n\n```\n{att.content}\n```"
        elif att_type == AttachmentType.TEXT and att.content:
            text += f"\n\n{att.content}"
    return text.strip(), [display_record(a) for a in attachments]
