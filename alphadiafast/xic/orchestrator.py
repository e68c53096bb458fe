"""Backend selection and batch extraction entry point."""

import logging
import warnings

import numpy as np

from ..exceptions import GpuExtractionError
from ..index.scan_index import ScanIndex
from .extraction import CpuFragmentExtractor, ExtractionResult, resolve_parallelism
from .gpu import GpuFragmentExtractor

logger = logging.getLogger(__name__)


def create_extractor(index: ScanIndex, prefer_cpu: bool = True):
    """Factory for an extraction backend.

    Parameters
    ----------
    index : ScanIndex
        Index to extract from
    prefer_cpu : bool, default=True
        False selects the CUDA backend

    Raises
    ------
    GpuExtractionError
        If the CUDA backend was requested but cannot be created.
    """
    if prefer_cpu:
        return CpuFragmentExtractor(index)
    return GpuFragmentExtractor(index)


class ExtractionOrchestrator:
    """Runs query batches on a lazily created backend.

    Parameters
    ----------
    index : ScanIndex
        Index shared by all batches
    prefer_cpu : bool, default=True
        Backend choice passed to :func:`create_extractor`
    fallback_to_cpu : bool, default=False
        On a GPU failure, warn and rerun the batch on the CPU backend instead
        of raising

    Examples
    --------
    >>> with ExtractionOrchestrator(index) as orchestrator:
    ...     result = orchestrator.extract_all(generation.queries, max_degree_of_parallelism=8)
    """

    def __init__(self, index: ScanIndex, prefer_cpu: bool = True, fallback_to_cpu: bool = False):
        if index is None:
            raise TypeError("index must not be None")
        self.index = index
        self.prefer_cpu = prefer_cpu
        self.fallback_to_cpu = fallback_to_cpu
        self._backend = None

    @property
    def backend_name(self) -> str:
        if self._backend is None:
            return "cpu" if self.prefer_cpu else "gpu"
        return "gpu" if isinstance(self._backend, GpuFragmentExtractor) else "cpu"

    def _switch_to_cpu(self, exc: Exception) -> None:
        message = f"GPU extraction failed ({exc}); falling back to CPU"
        logger.warning(message)
        warnings.warn(message)
        if self._backend is not None:
            self._backend.close()
        self._backend = CpuFragmentExtractor(self.index)
        self.prefer_cpu = True

    def _get_backend(self):
        if self._backend is None:
            try:
                self._backend = create_extractor(self.index, prefer_cpu=self.prefer_cpu)
            except GpuExtractionError as exc:
                if not self.fallback_to_cpu:
                    raise
                self._switch_to_cpu(exc)
        return self._backend

    def extract_all(self, queries: np.ndarray, max_degree_of_parallelism: int = -1) -> ExtractionResult:
        """Extract all queries; results are in query order.

        ``max_degree_of_parallelism`` of -1 resolves to the number of cores.
        """
        if len(queries) == 0:
            return ExtractionResult.empty()

        n_workers = resolve_parallelism(max_degree_of_parallelism)
        backend = self._get_backend()
        try:
            result = backend.extract_batch(queries, max_degree_of_parallelism=n_workers)
        except GpuExtractionError as exc:
            if not self.fallback_to_cpu:
                raise
            self._switch_to_cpu(exc)
            result = self._backend.extract_batch(queries, max_degree_of_parallelism=n_workers)

        logger.info(
            f"Extracted {result.total_data_points:,} XIC points for {len(queries):,} "
            f"queries ({self.backend_name}, {n_workers} workers)"
        )
        return result

    def close(self) -> None:
        if self._backend is not None:
            self._backend.close()
            self._backend = None

    def __enter__(self) -> 'ExtractionOrchestrator':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
