"""Score Kaldi batch transcriptions against reference transcripts.

Reports word, character and sentence error rates (WER, CER, SER), the
substitution/insertion/deletion breakdown and the real-time factor of the
batch (estimated transcription time over audio duration).

Usage:
  python -m kaldi_transcribe.evaluation.evaluate_transcriptions refs.jsonl preds.jsonl
"""
import argparse
import json
from pathlib import Path
from typing import Dict, Iterator

import jiwer

_NORMALIZE = jiwer.Compose([
    jiwer.ToLowerCase(),
    jiwer.RemovePunctuation(),
    jiwer.RemoveMultipleSpaces(),
    jiwer.Strip(),
])


def normalize(text: str) -> str:
    return _NORMALIZE(text or "")


def _iter_rows(path: Path) -> Iterator[dict]:
    """Yield objects from a JSONL file, or from a JSON list/``{path: text}`` map."""
    with open(path, "r", encoding="utf-8-sig") as f:
        if path.suffix.lower() != ".jsonl":
            data = json.load(f)
            if isinstance(data, dict):
                data = [{"audio_filepath": k, "text": v} for k, v in data.items()]
            yield from (row for row in data if isinstance(row, dict))
            return
        for line in f:
            if line.strip():
                yield json.loads(line)


def _key(row: dict):
    k = row.get("audio_filepath") or row.get("audio")
    return None if k is None else str(k)


def load_predictions(path: Path) -> Dict[str, dict]:
    """Map audio_filepath -> row; works for inference_kaldi output and manifests."""
    rows: Dict[str, dict] = {}
    for row in _iter_rows(path):
        k = _key(row)
        if k is not None:
            rows[k] = row
    return rows


def load_references(path: Path) -> Dict[str, str]:
    return {k: row.get("text", "") for k, row in load_predictions(path).items()}


def score(refs: Dict[str, str], preds: Dict[str, dict]) -> dict:
    keys = [k for k in refs if k in preds]
    if not keys:
        raise ValueError("No matching keys between references and predictions")

    ref_texts = [normalize(refs[k]) for k in keys]
    hyp_texts = [normalize(preds[k].get("text", "")) for k in keys]
    audio_s = sum(float(preds[k].get("duration", 0.0)) for k in keys)
    decode_s = sum(float(preds[k].get("transcription_time", 0.0)) for k in keys)

    word_info = jiwer.process_words(ref_texts, hyp_texts)
    return {
        "count": len(keys),
        "wer": word_info.wer,
        "cer": jiwer.cer(ref_texts, hyp_texts),
        "ser": sum(r != h for r, h in zip(ref_texts, hyp_texts)) / len(keys),
        "substitutions": word_info.substitutions,
        "insertions": word_info.insertions,
        "deletions": word_info.deletions,
        "rtf": decode_s / audio_s if audio_s > 0 else 0.0,
    }


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("references", type=str, help="Path to reference transcripts JSON/JSONL")
    parser.add_argument("predictions", type=str, help="Path to inference_kaldi JSONL output")
    args = parser.parse_args()

    m = score(load_references(Path(args.references)), load_predictions(Path(args.predictions)))
    print(f"Files: {m['count']}")
    print(f"WER: {m['wer']:.4f}\nCER: {m['cer']:.4f}\nSER: {m['ser']:.4f}")
    print(
        f"Substitutions: {m['substitutions']} | "
        f"Insertions: {m['insertions']} | Deletions: {m['deletions']}"
    )
    print(f"RTF: {m['rtf']:.4f}")


if __name__ == "__main__":
    main()
