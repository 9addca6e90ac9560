"""JSON serialisation of inference results.

Results hold numpy arrays and interval sets whose endpoints may be
infinite, neither of which the :mod:`json` module accepts.  These
helpers convert them to plain Python types, encoding ``±inf`` as the
strings ``"inf"`` / ``"-inf"``, and rebuild :class:`PerFeatureResult`
objects from the stored form.

Workflow
--------
>>> results = kmeans_inference(X, 3, 1, 2, feats=[0, 1], iso=True, sig=1.0)
>>> text = results_to_json(results, metadata={"dataset": "three_blobs"})
>>> restored, meta = results_from_json(text)
"""

from __future__ import annotations

import json
import math
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .inference import PerFeatureResult
from .intervals import IntervalSet

__all__ = [
    "numpy_safe",
    "intervals_to_list",
    "intervals_from_list",
    "result_to_dict",
    "result_from_dict",
    "results_to_json",
    "results_from_json",
]

FORMAT_VERSION = 1


# ═══════════════════════════════════════════════════════════════════
# Conversion helpers
# ═══════════════════════════════════════════════════════════════════

def _encode_float(x: float) -> Any:
    if math.isinf(x):
        return "inf" if x > 0 else "-inf"
    return float(x)


def _decode_float(x: Any) -> float:
    return float(x)


def numpy_safe(obj: Any) -> Any:
    """Recursively convert numpy scalars/arrays to native Python types."""
    if isinstance(obj, dict):
        return {k: numpy_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [numpy_safe(v) for v in obj]
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    return obj


def intervals_to_list(intervals: IntervalSet) -> List[List[Any]]:
    """``[[lo, hi], ...]`` with infinite endpoints as strings."""
    return [[_encode_float(lo), _encode_float(hi)] for lo, hi in intervals]


def intervals_from_list(rows: List[List[Any]]) -> IntervalSet:
    return IntervalSet([(_decode_float(lo), _decode_float(hi)) for lo, hi in rows])


# ═══════════════════════════════════════════════════════════════════
# Results
# ═══════════════════════════════════════════════════════════════════

def result_to_dict(result: PerFeatureResult) -> Dict[str, Any]:
    """Convert a PerFeatureResult to a JSON-serialisable dict."""
    return {
        "truncation_set": intervals_to_list(result.truncation_set),
        "final_cluster": numpy_safe(result.final_cluster),
        "test_stat": float(result.test_stat),
        "cluster_1": int(result.cluster_1),
        "cluster_2": int(result.cluster_2),
        "feat": int(result.feat),
        "sig": None if result.sig is None else float(result.sig),
        "cov": None if result.cov is None else numpy_safe(result.cov),
        "scale_factor": float(result.scale_factor),
        "p_naive": float(result.p_naive),
        "pval": float(result.pval),
        "n1": int(result.n1),
        "n2": int(result.n2),
        "n_iter": int(result.n_iter),
        "converged": bool(result.converged),
    }


def result_from_dict(d: Dict[str, Any]) -> PerFeatureResult:
    """Reconstruct a PerFeatureResult from :func:`result_to_dict` output."""
    cov = d.get("cov")
    return PerFeatureResult(
        truncation_set=intervals_from_list(d["truncation_set"]),
        final_cluster=np.asarray(d["final_cluster"], dtype=int),
        test_stat=d["test_stat"],
        cluster_1=d["cluster_1"],
        cluster_2=d["cluster_2"],
        feat=d["feat"],
        sig=d.get("sig"),
        cov=None if cov is None else np.asarray(cov, dtype=float),
        scale_factor=d["scale_factor"],
        p_naive=d["p_naive"],
        pval=d["pval"],
        n1=d.get("n1", 0),
        n2=d.get("n2", 0),
        n_iter=d.get("n_iter", 0),
        converged=d.get("converged", False),
    )


def results_to_json(
    results: List[PerFeatureResult],
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Serialise the results of one inference call to a JSON string."""
    payload = {
        "version": FORMAT_VERSION,
        "n_results": len(results),
        "results": [result_to_dict(r) for r in results],
    }
    if metadata:
        payload["metadata"] = numpy_safe(metadata)
    return json.dumps(payload, indent=2)


def results_from_json(text: str) -> Tuple[List[PerFeatureResult], Dict]:
    """Deserialise results from a JSON string.

    Returns
    -------
    results : list[PerFeatureResult]
    metadata : dict
    """
    payload = json.loads(text)
    results = [result_from_dict(d) for d in payload["results"]]
    return results, payload.get("metadata", {})
