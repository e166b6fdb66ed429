"""Staged pipeline for a single bulk row.

For one row the processor runs, strictly in order:

1. **Image description** of the row's source image (required).
2. **Content generation**: pin variations (title, description, keywords)
   from the row keywords and the description (required).  User-supplied
   title and description replace the generated ones.
3. For each of ``row.quantity`` units, with variations used cyclically:

   a. **Image generation** from the variation's title and description,
   b. **Download** of the provider image into the job's artifact directory,
      cover-fitted to the job dimensions,
   c. **Compositing** with the job template, when there is one,
   d. **Alt text** for the final image (non-fatal; skipped when the row
      supplies its own),
   e. **Metadata embedding** (best-effort).

Any failure inside a unit fails that unit only and increments
``failed_pins``.  The row is COMPLETED when at least one pin was produced,
FAILED otherwise.  Only :class:`JobStoreError` escapes a row.

Every stage call is recorded as a :class:`StageCall`.  The row keeps the
full list; each pin keeps the calls of its own unit.

The orchestrator moves the row to PROCESSING before calling
:meth:`RowProcessor.process_row`.  Pins are persisted as soon as they are
produced and the row's calls are saved after every unit.  The row's
terminal status is *not* written here: the orchestrator records it together
with the job counters in a single transaction.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

from pinworks.core.compositor import TemplateCompositor
from pinworks.core.errors import CompositingError, JobStoreError, StageError
from pinworks.core.job_store import JobStore
from pinworks.core.metadata import MetadataEmbedder
from pinworks.core.models import (
    PIN_STATUS_COMPLETED,
    BulkJob,
    BulkRow,
    GeneratedPin,
    JobConfig,
    PinContent,
    RowResult,
    RowStatus,
    Stage,
    StageCall,
    StageSelection,
    utcnow_iso,
)
from pinworks.core.providers.base import ProviderPool, ProviderResult, build_image_prompt
from pinworks.core.storage import ArtifactStorage, image_to_data_url
from pinworks.core.templates import OverlayTemplate

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONTENT_VARIATIONS = 5


class RowProcessor:
    """Run the per-row stage chain and persist the resulting pins."""

    def __init__(
        self,
        store: JobStore,
        providers: ProviderPool,
        storage: ArtifactStorage,
        compositor: TemplateCompositor,
        embedder: MetadataEmbedder,
    ):
        self.store = store
        self.providers = providers
        self.storage = storage
        self.compositor = compositor
        self.embedder = embedder

    async def process_row(self, row: BulkRow, job_config: JobConfig) -> RowResult:
        """Process one row to a terminal result.

        Stage errors never escape; persistence errors do.  An unexpected
        error outside the units fails the row but keeps the calls recorded
        so far.
        """
        calls: list[StageCall] = []
        logger.info(f"Processing row {row.id} (position {row.position}, quantity {row.quantity})")
        try:
            return await self._process(row, job_config, calls)
        except JobStoreError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error processing row {row.id}")
            return self._failed(row, f"Unexpected error: {e}", calls)

    async def _process(self, row: BulkRow, job_config: JobConfig, calls: list[StageCall]) -> RowResult:
        # Stage 1: image description
        selection = job_config.image_description
        adapter = self.providers.adapter_for(selection.provider_type)
        try:
            source_url = self.storage.to_provider_url(row.image_url)
        except FileNotFoundError as e:
            calls.append(
                StageCall(
                    stage=Stage.IMAGE_DESCRIPTION.value,
                    provider=selection.provider_type,
                    model=selection.model,
                    request={"image_url": row.image_url},
                    error=str(e),
                )
            )
            return self._failed(row, f"Image description failed: {e}", calls)
        try:
            described = await self._call(
                Stage.IMAGE_DESCRIPTION,
                selection,
                calls,
                {"image_url": row.image_url},
                lambda: adapter.describe_image(selection.credential.secret, selection.model, source_url),
            )
        except StageError as e:
            return self._failed(row, f"Image description failed: {e}", calls)

        # Stage 2: content variations
        selection = job_config.content
        adapter = self.providers.adapter_for(selection.provider_type)
        try:
            generated = await self._call(
                Stage.CONTENT,
                selection,
                calls,
                {"keywords": row.keywords},
                lambda: adapter.generate_content(
                    selection.credential.secret,
                    selection.model,
                    row.keywords,
                    described.value,
                    CONTENT_VARIATIONS,
                ),
            )
        except StageError as e:
            return self._failed(row, f"Content generation failed: {e}", calls)
        variations = [self._apply_overrides(row, c) for c in generated.value]

        # Stages 3-6: one unit per requested pin
        pins: list[GeneratedPin] = []
        failed_pins = 0
        last_error: str | None = None
        for index in range(row.quantity):
            content = variations[index % len(variations)]
            unit_calls: list[StageCall] = []
            try:
                pin = await self._produce_pin(row, job_config, content, index, unit_calls)
            except (StageError, CompositingError) as e:
                failed_pins += 1
                last_error = str(e)
                logger.warning(f"Row {row.id} unit {index + 1}/{row.quantity} failed: {e}")
            except JobStoreError:
                raise
            except Exception as e:
                failed_pins += 1
                last_error = f"Unexpected error: {e}"
                logger.exception(f"Row {row.id} unit {index + 1}/{row.quantity} failed")
            else:
                pins.append(self.store.create_pin(pin))
            calls.extend(unit_calls)
            self.store.update_row(row.id, stage_calls=calls, failed_pins=failed_pins)

        if pins:
            error = f"{failed_pins} of {row.quantity} pins failed: {last_error}" if failed_pins else None
            status = RowStatus.COMPLETED
        else:
            error = last_error or "No pins were generated"
            status = RowStatus.FAILED

        logger.info(
            f"Row {row.id} {status.value}: {len(pins)} pins generated, {failed_pins} failed"
        )
        return RowResult(
            status=status,
            pins=pins,
            failed_pins=failed_pins,
            error=error,
            stage_calls=calls,
        )

    async def _produce_pin(
        self,
        row: BulkRow,
        job_config: JobConfig,
        content: PinContent,
        index: int,
        calls: list[StageCall],
    ) -> GeneratedPin:
        """Run stages 3-6 for one unit.

        Raises:
            StageError: If image generation or download fails.
            CompositingError: If the template cannot be applied.
        """
        selection = job_config.image_generation
        adapter = self.providers.adapter_for(selection.provider_type)
        prompt = build_image_prompt(content)
        generated = await self._call(
            Stage.IMAGE_GENERATION,
            selection,
            calls,
            {"prompt": prompt, "width": job_config.width, "height": job_config.height},
            lambda: adapter.generate_image(
                selection.credential.secret,
                selection.model,
                prompt,
                job_config.width,
                job_config.height,
            ),
        )

        base_path = await self._timed(
            Stage.DOWNLOAD,
            calls,
            {"url": generated.value[:200]},
            lambda: self.storage.download(
                self.providers.client,
                generated.value,
                job_config.job_id,
                f"original_{index}",
                size=(job_config.width, job_config.height),
            ),
        )
        final_path = base_path

        template = job_config.template
        if template is not None:
            output_path = self.storage.new_artifact_path(job_config.job_id, f"final_{index}", ".png")
            final_path = await self._timed(
                Stage.COMPOSITING,
                calls,
                {"template_id": template.id, "template": template.name},
                lambda: asyncio.to_thread(
                    self.compositor.composite,
                    base_path,
                    template,
                    (job_config.width, job_config.height),
                    output_path,
                ),
            )

        alt_text = await self._alt_text(row, job_config, content, final_path, calls)

        await self._embed(final_path, content, calls)

        return GeneratedPin(
            id="",
            row_id=row.id,
            title=content.title,
            description=content.description,
            keywords=list(content.keywords),
            alt_text=alt_text,
            image_path=self.storage.relative_path(final_path),
            image_url=self.storage.public_url(final_path),
            source_path=self.storage.relative_path(base_path),
            template_id=template.id if template is not None else None,
            stage_calls=list(calls),
            status=PIN_STATUS_COMPLETED,
        )

    async def change_template(
        self, pin: GeneratedPin, job: BulkJob, template: OverlayTemplate
    ) -> GeneratedPin:
        """Re-composite a stored pin from its source image with *template*.

        The pin gets a new final image with freshly embedded metadata.  The
        previous final image is removed unless another pin still uses it.

        Raises:
            CompositingError: If the source image is gone or the template
                cannot be applied.
        """
        source = self.storage.resolve_output(pin.source_path or "")
        if source is None or not source.is_file():
            raise CompositingError(f"Source image of pin {pin.id} is no longer available")

        calls: list[StageCall] = []
        output_path = self.storage.new_artifact_path(job.id, "final", ".png")
        final_path = await self._timed(
            Stage.COMPOSITING,
            calls,
            {"template_id": template.id, "template": template.name},
            lambda: asyncio.to_thread(
                self.compositor.composite,
                source,
                template,
                (job.image_width, job.image_height),
                output_path,
            ),
        )
        content = PinContent(title=pin.title, description=pin.description, keywords=pin.keywords)
        await self._embed(final_path, content, calls)

        previous = self.storage.resolve_output(pin.image_path)
        pin.image_path = self.storage.relative_path(final_path)
        pin.image_url = self.storage.public_url(final_path)
        pin.template_id = template.id
        pin.stage_calls = pin.stage_calls + calls
        self.store.update_pin(
            pin.id,
            image_path=pin.image_path,
            image_url=pin.image_url,
            template_id=pin.template_id,
            stage_calls=pin.stage_calls,
        )
        if previous is not None and previous != source:
            if not self.store.count_pins_under(self.storage.relative_path(previous)):
                previous.unlink(missing_ok=True)
        logger.info(f"Pin {pin.id} re-composited with template {template.id}")
        return pin

    async def _embed(self, path: Path, content: PinContent, calls: list[StageCall]) -> None:
        started_at = utcnow_iso()
        started = time.perf_counter()
        embedded = await asyncio.to_thread(self.embedder.embed_metadata, path, content)
        calls.append(
            StageCall(
                stage=Stage.METADATA.value,
                request={"path": path.name},
                response={"embedded": embedded},
                error=None if embedded else "Metadata embedding failed",
                started_at=started_at,
                duration_ms=_elapsed_ms(started),
            )
        )

    async def _alt_text(
        self,
        row: BulkRow,
        job_config: JobConfig,
        content: PinContent,
        final_path: Path,
        calls: list[StageCall],
    ) -> str | None:
        if row.alt_text:
            return row.alt_text

        selection = job_config.image_description
        try:
            adapter = self.providers.adapter_for(selection.provider_type)
            image_url = await asyncio.to_thread(image_to_data_url, final_path)
            result = await self._call(
                Stage.ALT_TEXT,
                selection,
                calls,
                {"title": content.title},
                lambda: adapter.generate_alt_text(
                    selection.credential.secret, selection.model, image_url, content.title
                ),
            )
        except (StageError, OSError) as e:
            logger.warning(f"Alt text failed for row {row.id}: {e}")
            if not calls or calls[-1].stage != Stage.ALT_TEXT.value:
                calls.append(
                    StageCall(
                        stage=Stage.ALT_TEXT.value,
                        provider=selection.provider_type,
                        model=selection.model,
                        request={"title": content.title},
                        error=str(e),
                    )
                )
            return None
        return result.value or None

    async def _call(
        self,
        stage: Stage,
        selection: StageSelection,
        calls: list[StageCall],
        request_summary: dict[str, Any],
        invoke: Callable[[], Awaitable[ProviderResult[T]]],
    ) -> ProviderResult[T]:
        """Await a provider call and record it as a stage call."""
        started_at = utcnow_iso()
        started = time.perf_counter()
        try:
            result = await invoke()
        except Exception as e:
            calls.append(
                StageCall(
                    stage=stage.value,
                    provider=selection.provider_type,
                    model=selection.model,
                    request=request_summary,
                    response=getattr(e, "detail", None),
                    error=str(e),
                    started_at=started_at,
                    duration_ms=_elapsed_ms(started),
                )
            )
            raise
        calls.append(
            StageCall(
                stage=stage.value,
                provider=selection.provider_type,
                model=selection.model,
                request=result.request or request_summary,
                response=result.response,
                started_at=started_at,
                duration_ms=_elapsed_ms(started),
            )
        )
        return result

    async def _timed(
        self,
        stage: Stage,
        calls: list[StageCall],
        request_summary: dict[str, Any],
        invoke: Callable[[], Awaitable[T]],
    ) -> T:
        """Await a local stage and record it as a stage call."""
        started_at = utcnow_iso()
        started = time.perf_counter()
        try:
            value = await invoke()
        except Exception as e:
            calls.append(
                StageCall(
                    stage=stage.value,
                    request=request_summary,
                    error=str(e),
                    started_at=started_at,
                    duration_ms=_elapsed_ms(started),
                )
            )
            raise
        calls.append(
            StageCall(
                stage=stage.value,
                request=request_summary,
                response={"path": getattr(value, "name", str(value))},
                started_at=started_at,
                duration_ms=_elapsed_ms(started),
            )
        )
        return value

    @staticmethod
    def _apply_overrides(row: BulkRow, content: PinContent) -> PinContent:
        return PinContent(
            title=row.title or content.title,
            description=row.description or content.description,
            keywords=list(content.keywords),
        )

    @staticmethod
    def _failed(row: BulkRow, error: str, calls: list[StageCall]) -> RowResult:
        logger.warning(f"Row {row.id} FAILED: {error}")
        return RowResult(status=RowStatus.FAILED, error=error, stage_calls=calls)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
