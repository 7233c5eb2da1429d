"""Assemble decoded text into newline-delimited JSON records.

Kaldi decodes the whole batch in one pass, so per-file transcription time
is estimated: the batch wall-clock time is split across files in
proportion to their audio duration.
"""
from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, TextIO, Tuple

from kaldi_transcribe.models.kaldi_data import Utterance


@dataclass
class BatchContext:
    durations: Dict[str, Optional[float]] = field(default_factory=dict)
    elapsed: float = 0.0

    @classmethod
    def from_utterances(cls, utts: List[Utterance], elapsed: float) -> "BatchContext":
        return cls(durations={u.utt_id: u.duration for u in utts}, elapsed=elapsed)

    @property
    def total_duration(self) -> float:
        return sum(d for d in self.durations.values() if d is not None)


def allocate_time(ctx: BatchContext, utt_id: str) -> float:
    dur = ctx.durations.get(utt_id)
    total = ctx.total_duration
    if dur is None or total <= 0:
        return 0.0
    return ctx.elapsed * dur / total


def build_records(
    ctx: BatchContext,
    utts: List[Utterance],
    texts: Dict[str, str],
    strict: bool = False,
) -> Tuple[List[dict], int]:
    """Return ``(records, skipped)`` with one record per assembled utterance.

    An utterance is skipped when the decoder produced no best path for it
    or its duration is unknown. With ``strict`` it raises ``ValueError``
    instead.
    """
    records: List[dict] = []
    skipped = 0
    for u in utts:
        reason = None
        if ctx.durations.get(u.utt_id) is None:
            reason = "unknown audio duration"
        elif u.utt_id not in texts:
            reason = "no decoder output"
        if reason:
            if strict:
                raise ValueError(f"{u.audio_path}: {reason}")
            print(f"[SKIP] {u.audio_path}: {reason}", file=sys.stderr)
            skipped += 1
            continue
        records.append({
            "audio_filepath": str(u.audio_path),
            "text": texts[u.utt_id],
            "duration": round(float(ctx.durations[u.utt_id]), 3),
            "transcription_time": round(allocate_time(ctx, u.utt_id), 3),
        })
    return records, skipped


def write_jsonl(stream: TextIO, records: List[dict]) -> int:
    n = 0
    for r in records:
        stream.write(json.dumps(r, ensure_ascii=False) + "\n")
        n += 1
    stream.flush()
    return n
