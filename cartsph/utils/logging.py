from __future__ import annotations

import datetime as _dt
import io
import json
import math
import platform
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import torch


# --------------------------------------------
# JSON utilities (NaN/Inf safe + compact)
# --------------------------------------------

# Tensors with more elements than this are summarized instead of dumped.
_MAX_INLINE_TENSOR_NUMEL = 1024


def _json_sanitize(v: Any) -> Any:
    """
    Convert values into JSON-safe primitives.

    Rules:
    - Finite floats are emitted as-is.
    - NaN / ±Inf floats are stringified ("NaN", "Infinity", "-Infinity").
    - torch.dtype / torch.device are stringified.
    - torch.Tensors:
        * small (<= 1024 elements): full .tolist()
        * large: summarized with shape/dtype/min/max/mean
    - Containers are handled recursively.
    - Anything else that json.dumps can't handle is stringified.
    """
    if isinstance(v, float):
        if math.isfinite(v):
            return v
        if math.isnan(v):
            return "NaN"
        return "Infinity" if v > 0 else "-Infinity"

    if isinstance(v, (torch.dtype, torch.device)):
        return str(v)
    if isinstance(v, torch.Tensor):
        t = v.detach()
        if t.numel() <= _MAX_INLINE_TENSOR_NUMEL:
            return _json_sanitize(t.cpu().tolist())
        t_cpu = t.cpu()
        if t_cpu.is_floating_point():
            return {
                "_type": "tensor_summary",
                "shape": list(t_cpu.shape),
                "dtype": str(t.dtype),
                "min": _json_sanitize(float(t_cpu.min().item())),
                "max": _json_sanitize(float(t_cpu.max().item())),
                "mean": _json_sanitize(float(torch.nanmean(t_cpu).item())),
            }
        return {
            "_type": "tensor_summary",
            "shape": list(t_cpu.shape),
            "dtype": str(t.dtype),
        }

    if isinstance(v, dict):
        return {str(k): _json_sanitize(val) for k, val in v.items()}
    if isinstance(v, (list, tuple)):
        return [_json_sanitize(x) for x in v]
    if isinstance(v, (set, frozenset)):
        return sorted(_json_sanitize(x) for x in v)

    try:
        json.dumps(v)
        return v
    except (TypeError, ValueError):
        return str(v)


def _json_dump_line(obj: Dict[str, Any]) -> str:
    """
    Dump a single JSON object to a compact UTF-8 JSON string, after sanitization.
    """
    return json.dumps(_json_sanitize(obj), separators=(",", ":"), ensure_ascii=False)


# --------------------------------------------
# JSONL Logger (append-only, thread-safe)
# --------------------------------------------


class JsonlLogger:
    """
    Minimal, robust JSONL event logger.

    - Safe for NaN/Inf; values are sanitized.
    - Safe for torch tensors; large tensors are summarized.
    - Never raises to callers on I/O problems (best-effort).
    - .info/.debug/.warning/.error all write a single JSON object per line.
    - Adds "ts", "level", "msg" fields plus any structured k/v pairs.
    """

    def __init__(self, out_dir: Path | str, filename: str = "events.jsonl"):
        self.dir = Path(out_dir)
        self.dir.mkdir(parents=True, exist_ok=True)
        self.path = self.dir / filename
        self._lock = threading.Lock()
        self._stream: Optional[io.TextIOBase] = None
        self._open()

    # ----- context manager support -----
    def __enter__(self) -> "JsonlLogger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ----- file handling -----
    def _open(self) -> None:
        try:
            self._stream = self.path.open("a", encoding="utf-8")
        except OSError:
            self._stream = None

    def close(self) -> None:
        """
        Close the underlying stream; future writes will attempt to reopen.
        """
        with self._lock:
            if self._stream is not None:
                try:
                    self._stream.flush()
                    self._stream.close()
                except OSError:
                    pass
            self._stream = None

    # ------------- Core write -------------
    def _emit(self, level: str, msg: str, **fields: Any) -> None:
        rec: Dict[str, Any] = {
            "ts": _dt.datetime.now(_dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "level": level,
            "msg": msg,
        }
        if fields:
            rec.update(fields)

        line = _json_dump_line(rec)

        with self._lock:
            try:
                if self._stream is None:
                    self._open()
                if self._stream is not None:
                    self._stream.write(line + "\n")
                    self._stream.flush()
            except OSError:
                # logging must never break a kernel launch
                return

    # ------------- Public API (level helpers) -------------
    def info(self, msg: str, **fields: Any) -> None:
        self._emit("INFO", msg, **fields)

    def debug(self, msg: str, **fields: Any) -> None:
        self._emit("DEBUG", msg, **fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._emit("WARN", msg, **fields)

    def error(self, msg: str, **fields: Any) -> None:
        """
        Log an error. If the caller passes exc_info=True, attach traceback text
        into a "trace" field but do not re-raise.
        """
        if fields.pop("exc_info", False):
            import traceback

            fields["trace"] = traceback.format_exc()
        self._emit("ERROR", msg, **fields)

    def phase_start(self, name: str, **fields: Any) -> None:
        """
        Mark the start of a logical phase (e.g. a kernel launch).
        """
        self._emit("INFO", "Phase start", phase=name, **fields)

    def phase_end(self, name: str, **fields: Any) -> None:
        """
        Mark the end of a logical phase.
        """
        self._emit("INFO", "Phase end", phase=name, **fields)


# --------------------------------------------
# Runtime environment logging
# --------------------------------------------


def log_runtime_environment(logger: Any) -> None:
    """
    Log a best-effort summary of the runtime environment.

    Includes Python / platform, numpy and torch versions, CUDA availability
    and the name and memory of the current CUDA device, if any.
    """
    v: Dict[str, Any] = {
        "python": sys.version.replace("\n", " "),
        "platform": platform.platform(),
    }

    v["numpy"] = np.__version__
    v["torch"] = getattr(torch, "__version__", "unknown")
    cuda_ok = bool(torch.cuda.is_available())
    v["cuda_available"] = cuda_ok
    if cuda_ok:
        dev = torch.cuda.current_device()
        props = torch.cuda.get_device_properties(dev)
        v["device_name"] = props.name
        v["total_memory_gb"] = float(props.total_memory) / (1024.0**3)
    v["default_dtype"] = str(torch.get_default_dtype())

    logger.info("Runtime environment.", **v)


__all__ = [
    "JsonlLogger",
    "log_runtime_environment",
]
