"""Transcribe a batch of audio files with a pre-trained Kaldi model.

Audio paths are read one per line from stdin (or from --input: a file list,
a JSONL manifest with audio_filepath, or a directory). One JSON record per
file is written to stdout:

  {"audio_filepath": ..., "text": ..., "duration": <audio s>, "transcription_time": <s>}

Usage:
  find data/ -name '*.wav' | python -m kaldi_transcribe.models.inference_kaldi \
    --kaldi_dir /opt/kaldi --model_type nnet3 \
    --model_dir exp/chain/tdnn --graph_dir exp/chain/tdnn/graph > preds.jsonl

All diagnostics go to stderr.
"""
from __future__ import annotations

import argparse
import json
import os
import shutil
import subprocess
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional, TextIO, Tuple

from kaldi_transcribe.models.batch_report import BatchContext, build_records, write_jsonl
from kaldi_transcribe.models.kaldi_data import (
    DEFAULT_SAMPLE_RATE,
    DataDir,
    make_utterances,
    prepare_scratch,
    write_data_dir,
)
from kaldi_transcribe.models.kaldi_decode import (
    DECODERS,
    KaldiTools,
    decode,
    load_word_symbols,
    read_best_path,
    required_binaries,
)

AUDIO_SUFFIXES = {".wav", ".flac", ".mp3", ".ogg"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--kaldi_dir", default=os.environ.get("KALDI_ROOT", ""),
                        help="Kaldi installation root (default: $KALDI_ROOT)")
    parser.add_argument("--model_type", default="",
                        help=f"Model family: {' or '.join(sorted(DECODERS))}")
    parser.add_argument("--model_dir", default="", help="Directory with final.mdl and conf/")
    parser.add_argument("--graph_dir", default=None,
                        help="Directory with HCLG.fst and words.txt (default: <model_dir>/graph)")
    parser.add_argument("--input", default=None,
                        help="File list, JSONL manifest or directory to read instead of stdin")
    parser.add_argument("--tmp_dir", default=None, help="Parent directory for scratch files")
    parser.add_argument("--keep_tmp", action="store_true", help="Keep scratch files after exit")
    parser.add_argument("--strict", action="store_true",
                        help="Fail instead of skipping files that produce no record")
    parser.add_argument("--sample_rate", type=int, default=DEFAULT_SAMPLE_RATE,
                        help="Sample rate the model was trained on")
    return parser


def validate_args(args: argparse.Namespace) -> argparse.Namespace:
    """Resolve directory flags to Paths; exit with a message on bad input."""
    if not args.kaldi_dir:
        raise SystemExit("--kaldi_dir is required (or set KALDI_ROOT)")
    kaldi_dir = Path(args.kaldi_dir)
    if not kaldi_dir.is_dir():
        raise SystemExit(f"Kaldi directory not found: {kaldi_dir}")
    if not (kaldi_dir / "src").is_dir():
        raise SystemExit(f"Not a Kaldi installation (no src/ directory): {kaldi_dir}")

    model_type = (args.model_type or "").strip()
    if not model_type:
        raise SystemExit("--model_type is required")
    if model_type not in DECODERS:
        raise SystemExit(f"Invalid --model_type '{model_type}'; expected one of: {', '.join(sorted(DECODERS))}")

    if not args.model_dir:
        raise SystemExit("--model_dir is required")
    model_dir = Path(args.model_dir)
    if not model_dir.is_dir():
        raise SystemExit(f"Model directory not found: {model_dir}")

    graph_dir = Path(args.graph_dir) if args.graph_dir else model_dir / "graph"
    if not graph_dir.is_dir():
        raise SystemExit(f"Graph directory not found: {graph_dir}")

    for required in (model_dir / "final.mdl", graph_dir / "HCLG.fst", graph_dir / "words.txt"):
        if not required.is_file():
            raise SystemExit(f"Required model file not found: {required}")

    tools = KaldiTools(kaldi_dir)
    try:
        for name in required_binaries(model_type, model_dir):
            tools.binary(name)
    except FileNotFoundError as e:
        raise SystemExit(str(e))

    args.kaldi_dir = kaldi_dir
    args.model_type = model_type
    args.model_dir = model_dir
    args.graph_dir = graph_dir
    return args


def read_audio_paths(stream: TextIO) -> List[Path]:
    return [Path(ln.strip()) for ln in stream if ln.strip()]


def collect_input(input_arg: str) -> List[Path]:
    input_path = Path(input_arg)
    if input_path.is_dir():
        return sorted(p for p in input_path.glob("**/*") if p.suffix.lower() in AUDIO_SUFFIXES)
    if input_path.suffix.lower() == ".jsonl":
        paths: List[Path] = []
        with input_path.open("r", encoding="utf-8-sig") as f:
            for ln in f:
                if not ln.strip():
                    continue
                obj = json.loads(ln)
                p = obj.get("audio_filepath") or obj.get("audio")
                if p:
                    paths.append(Path(p))
        return paths
    with input_path.open("r", encoding="utf-8") as f:
        return read_audio_paths(f)


def _decode_batch(
    args: argparse.Namespace, tools: KaldiTools, data: DataDir, work: Path
) -> Tuple[Dict[str, str], float]:
    """Run the selected chain on the staged utterances; return texts and wall time."""
    print(f"[DECODE] {args.model_type} model {args.model_dir} on {len(data.utt_ids)} files", file=sys.stderr)
    start = time.perf_counter()
    try:
        best_path = decode(args.model_type, tools, data, args.model_dir,
                           args.graph_dir, work, sample_rate=args.sample_rate)
    except subprocess.CalledProcessError as e:
        print(f"[DECODE] Command failed with exit code {e.returncode}: {e.cmd}", file=sys.stderr)
        raise SystemExit(e.returncode if e.returncode > 0 else 1)
    elapsed = time.perf_counter() - start
    return read_best_path(best_path, load_word_symbols(args.graph_dir / "words.txt")), elapsed


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = validate_args(parser.parse_args(argv))

    audio_files = collect_input(args.input) if args.input else read_audio_paths(sys.stdin)
    if not audio_files:
        print("[OK] No input files", file=sys.stderr)
        return

    tools = KaldiTools(args.kaldi_dir)
    work = prepare_scratch(args.tmp_dir)
    try:
        utts = make_utterances(audio_files)
        data = write_data_dir(utts, work / "data", sample_rate=args.sample_rate)
        texts: Dict[str, str] = {}
        elapsed = 0.0
        if data.utt_ids:
            texts, elapsed = _decode_batch(args, tools, data, work)

        ctx = BatchContext.from_utterances(utts, elapsed)
        try:
            records, skipped = build_records(ctx, utts, texts, strict=args.strict)
        except ValueError as e:
            raise SystemExit(f"[SKIP] {e}")
        n = write_jsonl(sys.stdout, records)
        print(f"[OK] Wrote {n} records ({skipped} skipped) in {elapsed:.2f}s", file=sys.stderr)
    finally:
        if args.keep_tmp:
            print(f"[DATA] Scratch kept at {work}", file=sys.stderr)
        else:
            shutil.rmtree(work, ignore_errors=True)


if __name__ == "__main__":
    main()
