from typing import Optional

import structlog

from src.jobs.types import Processor

logger = structlog.get_logger()


class ProcessorRegistry:
    """Maps a job type tag to the processor that executes it.

    Built once at startup (see build_registry) and handed to the dispatcher.
    """

    def __init__(self) -> None:
        self._processors: dict[str, Processor] = {}

    def register(self, job_type: str, processor: Processor) -> None:
        """Bind a processor to a job type.

        A second registration for the same type replaces the first one.

        Args:
            job_type: Job type tag (e.g., 'gemini_request')
            processor: Object implementing ``async process(payload)``
        """
        job_type = str(getattr(job_type, "value", job_type))
        previous = self._processors.get(job_type)
        if previous is not None and previous is not processor:
            logger.warning(
                "processor_replaced",
                job_type=job_type,
                previous=type(previous).__name__,
                replacement=type(processor).__name__,
                source="registry",
            )

        self._processors[job_type] = processor

        logger.info(
            "processor_registered",
            job_type=job_type,
            processor=type(processor).__name__,
            source="registry",
        )

    def get_processor(self, job_type: str) -> Optional[Processor]:
        return self._processors.get(str(getattr(job_type, "value", job_type)))

    def get_registered_job_types(self) -> list[str]:
        return sorted(self._processors)
