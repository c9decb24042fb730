"""Turns uploaded files into AI-ingestible bytes, one route per file."""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from doc2md.conversion.encoder import MediaEncoder
from doc2md.conversion.formats import require_supported
from doc2md.conversion.models import PreparedFile, ProgressTick, Route, SourceFile
from doc2md.conversion.office import OfficeConverter
from doc2md.errors import ConfigurationMissing, FilePreparationFailed

logger = logging.getLogger("doc2md.pipeline")


@dataclass(frozen=True)
class PrepareProgress:
    index: int
    count: int
    percent: float
    eta: Optional[float] = None
    stage: str = "preparing"

    @property
    def overall(self) -> float:
        """Fraction of the whole batch, 0..1."""
        return (self.index + self.percent / 100.0) / max(1, self.count)


PrepareCallback = Callable[[PrepareProgress], None]


class FilePreparer:
    def __init__(self, office: OfficeConverter, encoder: MediaEncoder):
        self.office = office
        self.encoder = encoder

    async def prepare(
        self,
        files: list[SourceFile],
        on_progress: Optional[PrepareCallback] = None,
    ) -> list[PreparedFile]:
        """Prepare every file in order. The first failure aborts the batch."""
        prepared: list[PreparedFile] = []
        count = len(files)
        for index, source in enumerate(files):
            def forward(tick: ProgressTick, index: int = index) -> None:
                if on_progress:
                    on_progress(PrepareProgress(index, count, tick.percent, tick.eta, tick.stage))

            try:
                prepared.append(await self.prepare_one(source, forward))
            except Exception as e:
                logger.warning("Preparing %s failed: %s", source.name, e)
                raise FilePreparationFailed(source.name, e) from e
            if on_progress:
                on_progress(PrepareProgress(index, count, 100.0))
        return prepared

    async def prepare_one(
        self,
        source: SourceFile,
        on_progress: Optional[Callable[[ProgressTick], None]] = None,
    ) -> PreparedFile:
        classification = require_supported(source.media_type, source.name)
        info = classification.info

        if classification.route is Route.DIRECT:
            return PreparedFile(data=source.data, media_type=classification.media_type, name=source.name)

        if classification.route is Route.CONVERT:
            if not self.office.is_configured():
                raise ConfigurationMissing(f"{info.name} files need the office converter (set DRIVE_ACCESS_TOKEN)")
            logger.info("Converting %s (%s) to PDF", source.name, info.name)
            pdf = await self.office.to_pdf(source.data, classification.media_type)
            return PreparedFile(data=pdf, media_type="application/pdf", name=source.name)

        logger.info("Encoding %s (%.1fMB)", source.name, len(source.data) / 1024 / 1024)
        encoded = await self.encoder.encode(source.data, classification.media_type, on_progress=on_progress)
        return PreparedFile(data=encoded.data, media_type=encoded.media_type, name=source.name)
