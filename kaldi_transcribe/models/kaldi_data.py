"""Stage a batch of audio files as a Kaldi data directory.

Each input file becomes one utterance and one speaker. The directory holds
the text tables the Kaldi binaries expect (wav.scp, utt2spk, spk2utt),
keyed by utterance ids padded to the batch size so sorted order equals
input order.
"""
from __future__ import annotations

import shlex
import shutil
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import soundfile as sf

DEFAULT_SAMPLE_RATE = 16000


@dataclass
class Utterance:
    utt_id: str
    audio_path: Path
    duration: Optional[float]


@dataclass
class DataDir:
    root: Path
    wav_scp: Path
    utt2spk: Path
    spk2utt: Path
    utt_ids: List[str] = field(default_factory=list)


def audio_duration(path: Path) -> float:
    info = sf.info(str(path))
    return float(info.frames) / float(info.samplerate)


def make_utterances(paths: Iterable[Path]) -> List[Utterance]:
    paths = list(paths)
    width = max(5, len(str(len(paths) - 1)))
    utts: List[Utterance] = []
    for i, p in enumerate(paths):
        try:
            dur: Optional[float] = audio_duration(p)
        except (RuntimeError, OSError) as e:
            print(f"[DATA] Could not read duration of {p}: {e}", file=sys.stderr)
            dur = None
        utts.append(Utterance(utt_id=f"utt{i:0{width}d}", audio_path=Path(p), duration=dur))
    return utts


def _is_native_wav(path: Path, sample_rate: int) -> bool:
    try:
        info = sf.info(str(path))
    except (RuntimeError, OSError):
        return False
    return (
        info.format == "WAV"
        and info.subtype == "PCM_16"
        and info.channels == 1
        and info.samplerate == sample_rate
    )


def wav_scp_entry(utt: Utterance, sample_rate: int = DEFAULT_SAMPLE_RATE) -> str:
    """Return the rxfilename Kaldi should read this utterance's audio from.

    Pipes are run by Kaldi through ``sh -c``, so every path in them is quoted.
    """
    path = utt.audio_path.resolve()
    if _is_native_wav(path, sample_rate):
        # table values cannot hold bare whitespace
        if any(ch.isspace() for ch in str(path)):
            return f"cat {shlex.quote(str(path))} |"
        return str(path)
    sox = shutil.which("sox")
    if sox is None:
        raise RuntimeError(
            f"{path} is not 16-bit mono WAV at {sample_rate} Hz and sox was not found in PATH"
        )
    return f"{shlex.quote(sox)} {shlex.quote(str(path))} -t wav -r {sample_rate} -c 1 -b 16 - |"


def _write_table(path: Path, table: Dict[str, str]) -> None:
    with path.open("w", encoding="utf-8") as fo:
        for key in sorted(table):
            fo.write(f"{key} {table[key]}\n")


def write_data_dir(
    utts: List[Utterance], data_dir: Path, sample_rate: int = DEFAULT_SAMPLE_RATE
) -> DataDir:
    """Write the tables for every utterance that can be staged.

    Unreadable files and files sox would be needed for but is missing are
    left out; they get no decoder output and are skipped at assembly time.
    """
    data_dir.mkdir(parents=True, exist_ok=True)
    wav_table: Dict[str, str] = {}
    for u in utts:
        if u.duration is None:
            print(f"[DATA] Not staging {u.audio_path}: unreadable audio", file=sys.stderr)
            continue
        try:
            wav_table[u.utt_id] = wav_scp_entry(u, sample_rate)
        except RuntimeError as e:
            print(f"[DATA] Not staging {u.audio_path}: {e}", file=sys.stderr)
    out = DataDir(
        root=data_dir,
        wav_scp=data_dir / "wav.scp",
        utt2spk=data_dir / "utt2spk",
        spk2utt=data_dir / "spk2utt",
        utt_ids=sorted(wav_table),
    )
    _write_table(out.wav_scp, wav_table)
    # one speaker per utterance: the speaker id is the utterance id
    _write_table(out.utt2spk, {k: k for k in wav_table})
    _write_table(out.spk2utt, {k: k for k in wav_table})
    print(f"[DATA] Staged {len(wav_table)} of {len(utts)} utterances in {data_dir}", file=sys.stderr)
    return out


def prepare_scratch(tmp_dir: Optional[str] = None) -> Path:
    if tmp_dir:
        Path(tmp_dir).mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix="kaldi_transcribe_", dir=tmp_dir))
