from __future__ import annotations

"""
Logging helpers specific to the harmonics kernel.

Responsibilities
----------------
- Provide lightweight wrappers around the project's JsonlLogger.
- Centralize kernel-specific log keys (n_samples, l_max, backend, caps, ...).
- Optionally emit structured JSONL records for sanity-suite results.
- Make verbose console logging additive to structured loggers.

Environment variables
---------------------
CARTSPH_ENABLE_JSONL
    If truthy ("1", "true", "yes", "on"), sanity results are emitted as one
    JSON object per line. Also implicitly enabled by CARTSPH_JSONL_PATH.

CARTSPH_JSONL_PATH
    Optional filesystem path. If set, log_test_result_jsonl appends one JSON
    object per line to this file (UTF-8, no BOM).

CARTSPH_JSONL_NO_STDOUT
    If truthy and CARTSPH_JSONL_PATH is set, do not also print the JSON
    records to stdout.

CARTSPH_LOG_LEVEL
    Level used by log_kernel_event. One of
    {"debug", "info", "warning", "error", "critical"} (case-insensitive).

CARTSPH_DEBUG_VERBOSE
    If truthy, enables verbose console logging.
"""

import json
import math
import os
import sys
from typing import Any, List, Mapping, MutableMapping, Optional, Union

import torch
from torch import Tensor


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------

_TRUE_VALUES = {"1", "true", "yes", "on", "y"}
_FALSE_VALUES = {"0", "false", "no", "off", "n"}
_VERBOSE_ENV = "CARTSPH_DEBUG_VERBOSE"
_LEVELS = ("debug", "info", "warning", "error", "critical")


def _normalize_bool_env(name: str, default: bool = False) -> bool:
    """Interpret an environment variable as a boolean."""
    raw = os.environ.get(name)
    if raw is None:
        return default

    val = raw.strip().lower()
    if val in _TRUE_VALUES:
        return True
    if val in _FALSE_VALUES:
        return False
    return default


def want_verbose_debug(default: bool = False) -> bool:
    """
    True if CARTSPH_DEBUG_VERBOSE is truthy or CARTSPH_LOG_LEVEL == 'debug'.
    """
    if _normalize_bool_env(_VERBOSE_ENV, default=False):
        return True
    if os.environ.get("CARTSPH_LOG_LEVEL", "").strip().lower() == "debug":
        return True
    return default


def want_jsonl() -> bool:
    """Return True if JSONL emission of sanity results is enabled."""
    enabled_flag = _normalize_bool_env("CARTSPH_ENABLE_JSONL", default=False)
    has_path = bool(os.environ.get("CARTSPH_JSONL_PATH", "").strip())
    return enabled_flag or has_path


def get_log_level() -> str:
    """Normalized log level from CARTSPH_LOG_LEVEL (defaults to 'info')."""
    lvl = os.environ.get("CARTSPH_LOG_LEVEL", "info").strip().lower()
    if lvl not in _LEVELS:
        return "info"
    return lvl


# ---------------------------------------------------------------------------
# JSON-safe conversion
# ---------------------------------------------------------------------------


def _to_jsonable(obj: Any) -> Any:
    if obj is None or isinstance(obj, (bool, str)):
        return obj
    if isinstance(obj, int):
        return int(obj)
    if isinstance(obj, float):
        if not math.isfinite(obj):
            if math.isnan(obj):
                return "NaN"
            return "Infinity" if obj > 0.0 else "-Infinity"
        return float(obj)
    if isinstance(obj, Mapping):
        return {str(k): _to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_jsonable(v) for v in obj]
    return repr(obj)


# ---------------------------------------------------------------------------
# Loggers: Console & Combined
# ---------------------------------------------------------------------------


class ConsoleLogger:
    """Plain stdout logger for kernel traces. Needs no logging config."""

    def info(self, msg: str, **fields: Any) -> None:
        print(f"[CARTSPH] {msg}{_format_fields(fields)}", flush=True)

    def warning(self, msg: str, **fields: Any) -> None:
        print(f"[CARTSPH-WARN] {msg}{_format_fields(fields)}", flush=True)

    def error(self, msg: str, **fields: Any) -> None:
        print(f"[CARTSPH-ERR] {msg}{_format_fields(fields)}", flush=True)

    def debug(self, msg: str, **fields: Any) -> None:
        print(f"[CARTSPH-DEBUG] {msg}{_format_fields(fields)}", flush=True)


def _format_fields(fields: Mapping[str, Any]) -> str:
    if not fields:
        return ""
    parts = [f"{k}={v}" for k, v in fields.items()]
    return " | " + " ".join(parts)


class CombinedLogger:
    """
    Fans out log calls to multiple loggers.

    Used so that verbose console output still appears when a structured
    logger is also attached.
    """

    def __init__(self, *loggers: Any) -> None:
        self._loggers = [lg for lg in loggers if lg is not None]

    def _broadcast(self, method_name: str, msg: str, **kwargs: Any) -> None:
        for lg in self._loggers:
            fn = getattr(lg, method_name, None)
            if fn is None and method_name != "info":
                fn = getattr(lg, "info", None)
            if callable(fn):
                fn(msg, **kwargs)

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._broadcast("debug", msg, **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self._broadcast("info", msg, **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._broadcast("warning", msg, **kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._broadcast("error", msg, **kwargs)


def get_logger(logger: Optional[Any] = None) -> Any:
    """
    Resolve the logger a kernel should use.

    - verbose off: ``logger`` as given (possibly None).
    - verbose on, no logger: a ConsoleLogger.
    - verbose on, logger given: ``CombinedLogger(logger, ConsoleLogger())``.
    """
    console = ConsoleLogger() if want_verbose_debug() else None

    if logger is None:
        return console
    if console is None or isinstance(logger, CombinedLogger):
        return logger
    return CombinedLogger(logger, console)


# ---------------------------------------------------------------------------
# Tensor debugging
# ---------------------------------------------------------------------------


def _safe_tensor(x: Any) -> Optional[Tensor]:
    """Convert array-likes to a tensor; None if that is not possible."""
    if isinstance(x, torch.Tensor):
        return x
    try:
        return torch.as_tensor(x)
    except (TypeError, ValueError, RuntimeError):
        return None


def debug_tensor_stats(name: str, x: Any, logger: Optional[Any] = None) -> None:
    """
    Log shape/min/max/mean of ``x``. Accepts None, lists or tensors.

    Without a logger this only prints when verbose debug is enabled.
    """
    if logger is None:
        if not want_verbose_debug():
            return
        logger = ConsoleLogger()

    if x is None:
        logger.debug(f"{name}: <None>")
        return

    t = _safe_tensor(x)
    if t is None:
        logger.debug(f"{name}: <{type(x).__name__}> (not a tensor)")
        return

    if t.numel() == 0:
        logger.debug(f"{name}: empty tensor shape={tuple(t.shape)}")
        return

    t_float = t.detach().to(torch.float64)
    finite = bool(torch.isfinite(t_float).all())
    logger.debug(
        f"{name}: shape={tuple(t.shape)}, dtype={t.dtype}, "
        f"min={t_float.min().item():.3e}, "
        f"max={t_float.max().item():.3e}, "
        f"mean={t_float.mean().item():.3e}, finite={finite}"
    )


# ---------------------------------------------------------------------------
# Low-level JSONL file writer
# ---------------------------------------------------------------------------


def _write_jsonl_to_path(path: str, line: str) -> None:
    """Append a single JSONL line to ``path`` (UTF-8, no BOM)."""
    if not path:
        return
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line)
        f.write("\n")


# ---------------------------------------------------------------------------
# Kernel events
# ---------------------------------------------------------------------------


def log_kernel_event(
    logger: Optional[Any],
    event: str,
    **fields: Any,
) -> None:
    """
    Emit a structured kernel event at CARTSPH_LOG_LEVEL.

    With no logger this is a no-op unless verbose debug is on, in which case
    the event goes to the console.
    """
    if logger is None and not want_verbose_debug():
        return

    resolved = get_logger(logger)
    if resolved is None:
        return

    log_fn = getattr(resolved, get_log_level(), None)
    if not callable(log_fn):
        log_fn = getattr(resolved, "info", None)
    if callable(log_fn):
        log_fn(event, **fields)


def log_test_result_jsonl(suite: str, result: Any) -> None:
    """Emit a one-line JSON object summarizing a sanity result (if enabled)."""
    if not want_jsonl():
        return

    record: MutableMapping[str, Any] = {
        "event": "cartsph_test_result",
        "suite": suite,
        "name": str(getattr(result, "name", "<unknown>")),
        "ok": bool(getattr(result, "ok", False)),
        "max_abs_err": float(getattr(result, "max_abs_err", float("nan"))),
        "rel_l2_err": float(getattr(result, "rel_l2_err", float("nan"))),
    }

    extra = getattr(result, "extra", None)
    if isinstance(extra, Mapping):
        for k, v in extra.items():
            key = str(k)
            if key in record:
                key = f"extra_{key}"
            record[key] = _to_jsonable(v)

    line = json.dumps(
        _to_jsonable(record),
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
    )

    jsonl_path = os.environ.get("CARTSPH_JSONL_PATH", "").strip()
    if jsonl_path:
        _write_jsonl_to_path(jsonl_path, line)
        if _normalize_bool_env("CARTSPH_JSONL_NO_STDOUT", default=False):
            return

    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def degree_spectrum(sph: Tensor, l_max: int) -> List[float]:
    """
    Per-degree L2 norm of the batch-averaged magnitudes of ``sph``.

    ``sph`` is (N, (l_max+1)^2); entry l of the result is the norm of the
    2l+1 channels of degree l.
    """
    if sph.numel() == 0:
        return [0.0] * (l_max + 1)
    avg = sph.detach().abs().to(torch.float64).mean(dim=0)
    out: List[float] = []
    for l in range(l_max + 1):
        start = l * l
        stop = start + 2 * l + 1
        if stop > avg.shape[0]:
            break
        out.append(float(torch.linalg.vector_norm(avg[start:stop]).item()))
    return out


def log_degree_spectrum(
    logger: Optional[Any],
    stage_name: str,
    sph: Union[Tensor, List[Any], Any],
    l_max: int,
    threshold: float = 1e5,
) -> None:
    """
    Log the per-degree spectrum of a harmonics output.

    Reports non-finite values as errors and flags values above ``threshold``.
    Falls back to a ConsoleLogger when verbose debug is on.
    """
    if logger is None:
        if not want_verbose_debug():
            return
        logger = ConsoleLogger()

    t = _safe_tensor(sph)
    if t is None or t.numel() == 0:
        return
    if t.ndim == 1:
        t = t.unsqueeze(0)

    if not bool(torch.isfinite(t).all()):
        logger.error(f"[{stage_name}] tensor contains NaNs or Infs")
        return

    max_val = float(t.abs().max().item())
    spectrum = degree_spectrum(t, l_max)
    spectrum_str = ", ".join(f"l{l}={val:.1e}" for l, val in enumerate(spectrum))
    logger.info(f"[{stage_name}] MaxMag={max_val:.2e} | Spectrum: [{spectrum_str}]")

    if max_val > threshold:
        logger.warning(f"[{stage_name}] values exceed threshold {threshold:.1e}")


__all__ = [
    "log_kernel_event",
    "log_test_result_jsonl",
    "log_degree_spectrum",
    "degree_spectrum",
    "want_jsonl",
    "get_log_level",
    "want_verbose_debug",
    "ConsoleLogger",
    "CombinedLogger",
    "debug_tensor_stats",
    "get_logger",
]
