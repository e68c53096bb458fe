"""End-to-end DIA search: index, queries, extraction, scoring, features, FDR."""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import DiaSearchParameters, FdrHyperparameters
from .features.feature_vector import DiaFeatureVector, compute_features
from .index.scan_index import ScanIndex, ScanRecord, build_scan_index
from .query.generator import GenerationResult, generate_calibrated_queries, generate_queries
from .query.precursor import LibraryPrecursorInput
from .rt.calibration import FitOptions, RtCalibrationModel, fit_rt_calibration
from .scoring.assembly import AssemblyStats, assemble_results
from .scoring.fdr import FdrResult, run_iterative_fdr
from .scoring.results import DiaSearchResult
from .xic.orchestrator import ExtractionOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class DiaSearchOutcome:
    """Everything one search produced.

    ``fdr`` is None when FDR was not requested or could not run (no results,
    or no targets or no decoys among them).
    """

    results: List[DiaSearchResult]
    features: List[DiaFeatureVector]
    generation: GenerationResult
    fdr: Optional[FdrResult] = None
    assembly_stats: AssemblyStats = field(default_factory=AssemblyStats)


def calibrate_and_generate(
    precursors: Sequence[LibraryPrecursorInput],
    index: ScanIndex,
    parameters: Optional[DiaSearchParameters],
    anchor_library_rt,
    anchor_observed_rt,
    options: Optional[FitOptions] = None,
) -> Tuple[Optional[RtCalibrationModel], GenerationResult]:
    """Fit an RT calibration from anchors and generate queries with it.

    Parameters
    ----------
    precursors : sequence of LibraryPrecursorInput
    index : ScanIndex
    parameters : DiaSearchParameters, optional
    anchor_library_rt, anchor_observed_rt : array-like
        Library iRT/RT and observed RT (minutes) of confidently identified
        anchor precursors
    options : FitOptions, optional

    Returns
    -------
    model : RtCalibrationModel or None
        The fitted model, None if fitting was impossible
    generation : GenerationResult
        Calibrated windows if the model is reliable, otherwise fixed
        ``rt_tolerance_minutes`` windows around library RT
    """
    parameters = parameters or DiaSearchParameters()
    model = fit_rt_calibration(anchor_library_rt, anchor_observed_rt, options)

    if model is not None and model.is_reliable:
        generation = generate_calibrated_queries(precursors, index, parameters, model)
        return model, generation

    reason = "no model could be fitted" if model is None else f"model is unreliable ({model})"
    message = f"RT calibration not used, {reason}; falling back to fixed RT windows"
    logger.warning(message)
    warnings.warn(message)
    return model, generate_queries(precursors, index, parameters)


def _can_run_fdr(results: Sequence[DiaSearchResult]) -> bool:
    n_decoys = sum(1 for r in results if r.is_decoy)
    return 0 < n_decoys < len(results)


def run_dia_search(
    scans: Union[Iterable[ScanRecord], ScanIndex],
    precursors: Sequence[LibraryPrecursorInput],
    parameters: Optional[DiaSearchParameters] = None,
    calibration: Optional[RtCalibrationModel] = None,
    run_fdr: bool = True,
    fdr_hyperparameters: Optional[FdrHyperparameters] = None,
) -> DiaSearchOutcome:
    """Run a complete DIA search.

    Parameters
    ----------
    scans : iterable of ScanRecord or ScanIndex
        Raw scans (indexed here and released on exit) or a prebuilt index
        (left open for the caller)
    precursors : sequence of LibraryPrecursorInput
        Targets and decoys
    parameters : DiaSearchParameters, optional
    calibration : RtCalibrationModel, optional
        If given, RT windows come from the model
    run_fdr : bool, default=True
        Run the iterative classifier/FDR loop on the results
    fdr_hyperparameters : FdrHyperparameters, optional

    Returns
    -------
    DiaSearchOutcome

    Examples
    --------
    >>> outcome = run_dia_search(scans, library, DiaSearchParameters(ppm_tolerance=15))
    >>> print(outcome.fdr.ids_at_1pct)
    """
    parameters = (parameters or DiaSearchParameters()).validate()
    owns_index = not isinstance(scans, ScanIndex)
    start = time.perf_counter()

    index = (
        build_scan_index(scans, parameters.isolation_window_tolerance_ppm)
        if owns_index else scans
    )
    try:
        if calibration is not None:
            generation = generate_calibrated_queries(precursors, index, parameters, calibration)
        else:
            generation = generate_queries(precursors, index, parameters)

        with ExtractionOrchestrator(
            index,
            prefer_cpu=not parameters.prefer_gpu,
            fallback_to_cpu=parameters.prefer_gpu,
        ) as orchestrator:
            extraction = orchestrator.extract_all(
                generation.queries, max_degree_of_parallelism=parameters.effective_max_threads
            )

        stats = AssemblyStats()
        results = assemble_results(precursors, generation, extraction, parameters, stats)
    finally:
        if owns_index:
            index.close()

    features = [compute_features(result, i) for i, result in enumerate(results)]

    fdr = None
    if run_fdr:
        if _can_run_fdr(results):
            fdr = run_iterative_fdr(results, features, hyperparameters=fdr_hyperparameters)
        else:
            logger.warning(
                f"Skipping FDR: {len(results)} results without both targets and decoys"
            )

    elapsed = time.perf_counter() - start
    n_targets = int(np.sum([not r.is_decoy for r in results]))
    logger.info(
        f"DIA search finished in {elapsed:.2f}s: {len(results):,} results "
        f"({n_targets:,} targets) from {len(precursors):,} precursors"
    )
    return DiaSearchOutcome(results, features, generation, fdr, stats)
