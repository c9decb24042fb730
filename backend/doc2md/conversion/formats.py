"""Static media-type table deciding how each upload reaches the AI backend.

The table is the whole policy: no sniffing, no heuristics. A type is either
listed under one route or unsupported.
"""
from pathlib import PurePath
from typing import Optional

from doc2md.conversion.models import Classification, FormatInfo, MediaKind, Route
from doc2md.errors import UnsupportedFormat

_DOC = MediaKind.DOCUMENT
_IMG = MediaKind.IMAGE
_AUD = MediaKind.AUDIO
_VID = MediaKind.VIDEO
_TXT = MediaKind.TEXT

_GOOGLE_DOC = "application/vnd.google-apps.document"
_GOOGLE_SHEET = "application/vnd.google-apps.spreadsheet"
_GOOGLE_SLIDES = "application/vnd.google-apps.presentation"


def _to_mp3(name: str, ext: str) -> FormatInfo:
    return FormatInfo(name, ext, _AUD, output_format="mp3", output_media_type="audio/mpeg")


def _to_mp4(name: str, ext: str) -> FormatInfo:
    return FormatInfo(name, ext, _VID, output_format="mp4", output_media_type="video/mp4")


SUPPORTED_FORMATS: dict[Route, dict[str, FormatInfo]] = {
    # Sent to the AI backend as-is
    Route.DIRECT: {
        "application/pdf": FormatInfo("PDF", ".pdf", _DOC),
        "image/png": FormatInfo("PNG", ".png", _IMG),
        "image/jpeg": FormatInfo("JPEG", ".jpg", _IMG),
        "image/webp": FormatInfo("WebP", ".webp", _IMG),
        "image/gif": FormatInfo("GIF", ".gif", _IMG),
        "audio/mpeg": FormatInfo("MP3", ".mp3", _AUD),
        "audio/mp3": FormatInfo("MP3", ".mp3", _AUD),
        "audio/wav": FormatInfo("WAV", ".wav", _AUD),
        "text/plain": FormatInfo("Text", ".txt", _TXT),
        "text/markdown": FormatInfo("Markdown", ".md", _TXT),
    },
    # Office documents rendered to PDF first
    Route.CONVERT: {
        "application/vnd.openxmlformats-officedocument.presentationml.presentation": FormatInfo(
            "PowerPoint", ".pptx", _DOC, import_as=_GOOGLE_SLIDES
        ),
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document": FormatInfo(
            "Word", ".docx", _DOC, import_as=_GOOGLE_DOC
        ),
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": FormatInfo(
            "Excel", ".xlsx", _DOC, import_as=_GOOGLE_SHEET
        ),
        "application/vnd.ms-powerpoint": FormatInfo("PowerPoint (Legacy)", ".ppt", _DOC, import_as=_GOOGLE_SLIDES),
        "application/msword": FormatInfo("Word (Legacy)", ".doc", _DOC, import_as=_GOOGLE_DOC),
    },
    # Re-encoded with ffmpeg: audio -> mp3, video -> mp4
    Route.ENCODE: {
        "audio/mp4": _to_mp3("M4A", ".m4a"),
        "audio/aac": _to_mp3("AAC", ".aac"),
        "audio/aacp": _to_mp3("AAC+", ".aac"),
        "audio/opus": _to_mp3("Opus", ".opus"),
        "audio/flac": _to_mp3("FLAC", ".flac"),
        "audio/ogg": _to_mp3("OGG", ".ogg"),
        "audio/x-flac": _to_mp3("FLAC", ".flac"),
        "audio/x-aac": _to_mp3("AAC", ".aac"),
        "audio/x-m4a": _to_mp3("M4A", ".m4a"),
        "audio/x-opus": _to_mp3("Opus", ".opus"),
        "audio/webm": _to_mp3("WebM Audio", ".weba"),
        "video/mp4": _to_mp4("MP4", ".mp4"),
        "video/quicktime": _to_mp4("QuickTime", ".mov"),
        "video/x-matroska": _to_mp4("MKV", ".mkv"),
        "video/3gpp": _to_mp4("3GP", ".3gp"),
        "video/webm": _to_mp4("WebM", ".webm"),
        "video/x-m4v": _to_mp4("M4V", ".m4v"),
        "video/avi": _to_mp4("AVI", ".avi"),
        "video/x-msvideo": _to_mp4("AVI", ".avi"),
    },
}

EXTENSION_TO_MEDIA_TYPE: dict[str, str] = {}
for _route_table in SUPPORTED_FORMATS.values():
    for _media_type, _info in _route_table.items():
        EXTENSION_TO_MEDIA_TYPE.setdefault(_info.extension, _media_type)
EXTENSION_TO_MEDIA_TYPE[".jpeg"] = "image/jpeg"
EXTENSION_TO_MEDIA_TYPE[".markdown"] = "text/markdown"


def normalize_media_type(media_type: Optional[str]) -> str:
    """Lower-case and drop parameters: ``'Text/Plain; charset=utf-8'`` -> ``'text/plain'``."""
    return (media_type or "").split(";", 1)[0].strip().lower()


def classify(media_type: Optional[str]) -> Classification:
    mt = normalize_media_type(media_type)
    for route, table in SUPPORTED_FORMATS.items():
        info = table.get(mt)
        if info is not None:
            return Classification(media_type=mt, supported=True, route=route, info=info)
    return Classification(media_type=mt, supported=False)


def require_supported(media_type: Optional[str], name: str = "file") -> Classification:
    result = classify(media_type)
    if not result.supported:
        raise UnsupportedFormat(f"Unsupported file format: {name} ({media_type or 'unknown'})")
    return result


def extension_to_media_type(filename: str) -> Optional[str]:
    return EXTENSION_TO_MEDIA_TYPE.get(PurePath(filename or "").suffix.lower())


def resolve_media_type(declared: Optional[str], filename: str) -> str:
    """Use the declared type when the table knows it, else fall back to the file extension."""
    mt = normalize_media_type(declared)
    if classify(mt).supported:
        return mt
    return extension_to_media_type(filename) or mt


def media_kind(media_type: Optional[str]) -> Optional[MediaKind]:
    result = classify(media_type)
    return result.info.kind if result.info else None


def supported_formats() -> list[dict]:
    formats = []
    for route, table in SUPPORTED_FORMATS.items():
        for mt, info in table.items():
            entry = {
                "media_type": mt,
                "extension": info.extension,
                "name": info.name,
                "kind": info.kind.value,
                "route": route.value,
            }
            if route is Route.CONVERT:
                entry["requires_office_converter"] = True
            if route is Route.ENCODE:
                entry["output_media_type"] = info.output_media_type
            formats.append(entry)
    return formats
