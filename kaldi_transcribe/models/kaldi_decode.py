"""Run the Kaldi binaries that turn a staged data directory into best paths.

Two fixed chains are supported:

- ``gmm``:   MFCC -> per-speaker CMVN -> deltas -> gmm-latgen-faster -> best path
- ``nnet3``: hires MFCC -> (online i-vectors) -> nnet3-latgen-faster -> best path

Nothing here decodes audio itself; every step is a blocking subprocess.
"""
from __future__ import annotations

import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from kaldi_transcribe.models.kaldi_data import DEFAULT_SAMPLE_RATE, DataDir

# Kaldi keeps each binary family in its own directory under src/
BIN_DIRS: Dict[str, str] = {
    "compute-mfcc-feats": "featbin",
    "compute-cmvn-stats": "featbin",
    "apply-cmvn": "featbin",
    "add-deltas": "featbin",
    "gmm-latgen-faster": "gmmbin",
    "nnet3-latgen-faster": "nnet3bin",
    "ivector-extract-online2": "online2bin",
    "lattice-best-path": "latbin",
}


@dataclass
class DecodeOptions:
    max_active: int = 7000
    min_active: int = 200
    beam: float = 13.0
    lattice_beam: float = 6.0
    acoustic_scale: float = 0.083333
    best_path_acoustic_scale: float = 0.083333
    frame_subsampling_factor: int = 1
    frames_per_chunk: int = 50
    ivector_period: int = 10


GMM_OPTIONS = DecodeOptions()
# chain models decode at acwt 1.0; best path uses the usual LM weight of 10
NNET3_OPTIONS = DecodeOptions(
    beam=15.0,
    lattice_beam=8.0,
    acoustic_scale=1.0,
    best_path_acoustic_scale=0.1,
    frame_subsampling_factor=3,
)


class KaldiTools:
    """Locate Kaldi binaries below a source tree, falling back to PATH."""

    def __init__(self, kaldi_dir: Path):
        self.kaldi_dir = Path(kaldi_dir)

    def binary(self, name: str) -> str:
        subdir = BIN_DIRS.get(name)
        if subdir:
            cand = self.kaldi_dir / "src" / subdir / name
            if cand.is_file():
                return str(cand)
        found = shutil.which(name)
        if found:
            return found
        raise FileNotFoundError(f"Kaldi binary '{name}' not found under {self.kaldi_dir / 'src'} or in PATH")


def required_binaries(model_type: str, model_dir: Path) -> List[str]:
    """Binaries the selected chain will invoke, in call order."""
    if model_type == "gmm":
        return ["compute-mfcc-feats", "compute-cmvn-stats", "apply-cmvn", "add-deltas",
                "gmm-latgen-faster", "lattice-best-path"]
    names = ["compute-mfcc-feats"]
    if (model_dir / "conf" / "ivector_extractor.conf").is_file():
        names.append("ivector-extract-online2")
    return names + ["nnet3-latgen-faster", "lattice-best-path"]


def run(cmd: List[str]) -> None:
    """Run a toolkit binary to completion, echoing the command.

    Child stdout goes to our stderr; stdout is reserved for JSON records.
    """
    print("+", " ".join(cmd), file=sys.stderr)
    subprocess.run(cmd, check=True, stdout=sys.stderr)


def _mfcc_opts(model_dir: Path, conf_name: str, sample_rate: int) -> List[str]:
    conf = model_dir / "conf" / conf_name
    if conf.is_file():
        return [f"--config={conf}"]
    print(f"[DECODE] {conf} not found, using default MFCC options", file=sys.stderr)
    return [f"--sample-frequency={sample_rate}", "--use-energy=false"]


def _best_path(tools: KaldiTools, lat: Path, out: Path, opts: DecodeOptions) -> Path:
    run([
        tools.binary("lattice-best-path"),
        f"--acoustic-scale={opts.best_path_acoustic_scale}",
        f"ark:{lat}",
        f"ark,t:{out}",
    ])
    return out


def decode_gmm(
    tools: KaldiTools,
    data: DataDir,
    model_dir: Path,
    graph_dir: Path,
    work: Path,
    opts: Optional[DecodeOptions] = None,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> Path:
    opts = opts or GMM_OPTIONS
    feats_ark, feats_scp = work / "feats.ark", work / "feats.scp"
    cmvn_ark, cmvn_scp = work / "cmvn.ark", work / "cmvn.scp"
    normed = work / "feats_cmvn.ark"
    deltas = work / "feats_delta.ark"
    lat = work / "lat.ark"

    run([tools.binary("compute-mfcc-feats"), *_mfcc_opts(model_dir, "mfcc.conf", sample_rate),
         f"scp:{data.wav_scp}", f"ark,scp:{feats_ark},{feats_scp}"])
    run([tools.binary("compute-cmvn-stats"), f"--spk2utt=ark:{data.spk2utt}",
         f"scp:{feats_scp}", f"ark,scp:{cmvn_ark},{cmvn_scp}"])
    run([tools.binary("apply-cmvn"), f"--utt2spk=ark:{data.utt2spk}",
         f"scp:{cmvn_scp}", f"scp:{feats_scp}", f"ark:{normed}"])
    run([tools.binary("add-deltas"), f"ark:{normed}", f"ark:{deltas}"])
    run([
        tools.binary("gmm-latgen-faster"),
        f"--max-active={opts.max_active}",
        f"--beam={opts.beam}",
        f"--lattice-beam={opts.lattice_beam}",
        f"--acoustic-scale={opts.acoustic_scale}",
        "--allow-partial=true",
        f"--word-symbol-table={graph_dir / 'words.txt'}",
        str(model_dir / "final.mdl"),
        str(graph_dir / "HCLG.fst"),
        f"ark:{deltas}",
        f"ark:{lat}",
    ])
    return _best_path(tools, lat, work / "best_path.int", opts)


def decode_nnet3(
    tools: KaldiTools,
    data: DataDir,
    model_dir: Path,
    graph_dir: Path,
    work: Path,
    opts: Optional[DecodeOptions] = None,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> Path:
    opts = opts or NNET3_OPTIONS
    feats_ark, feats_scp = work / "feats.ark", work / "feats.scp"
    ivectors = work / "ivectors.ark"
    lat = work / "lat.ark"

    run([tools.binary("compute-mfcc-feats"), *_mfcc_opts(model_dir, "mfcc_hires.conf", sample_rate),
         f"scp:{data.wav_scp}", f"ark,scp:{feats_ark},{feats_scp}"])

    ivector_opts: List[str] = []
    ivector_conf = model_dir / "conf" / "ivector_extractor.conf"
    if ivector_conf.is_file():
        run([tools.binary("ivector-extract-online2"), f"--config={ivector_conf}",
             f"ark:{data.spk2utt}", f"scp:{feats_scp}", f"ark:{ivectors}"])
        ivector_opts = [f"--online-ivectors=ark:{ivectors}", f"--online-ivector-period={opts.ivector_period}"]

    run([
        tools.binary("nnet3-latgen-faster"),
        f"--frame-subsampling-factor={opts.frame_subsampling_factor}",
        f"--frames-per-chunk={opts.frames_per_chunk}",
        "--extra-left-context=0",
        "--extra-right-context=0",
        "--extra-left-context-initial=-1",
        "--extra-right-context-final=-1",
        f"--max-active={opts.max_active}",
        f"--min-active={opts.min_active}",
        f"--beam={opts.beam}",
        f"--lattice-beam={opts.lattice_beam}",
        f"--acoustic-scale={opts.acoustic_scale}",
        "--allow-partial=true",
        f"--word-symbol-table={graph_dir / 'words.txt'}",
        *ivector_opts,
        str(model_dir / "final.mdl"),
        str(graph_dir / "HCLG.fst"),
        f"scp:{feats_scp}",
        f"ark:{lat}",
    ])
    return _best_path(tools, lat, work / "best_path.int", opts)


DECODERS: Dict[str, Callable[..., Path]] = {
    "gmm": decode_gmm,
    "nnet3": decode_nnet3,
}


def decode(model_type: str, tools: KaldiTools, data: DataDir, model_dir: Path,
           graph_dir: Path, work: Path, sample_rate: int = DEFAULT_SAMPLE_RATE) -> Path:
    return DECODERS[model_type](tools, data, model_dir, graph_dir, work, sample_rate=sample_rate)


def load_word_symbols(words_txt: Path) -> Dict[str, str]:
    """Map integer ids to words from an OpenFst symbol table."""
    symbols: Dict[str, str] = {}
    with words_txt.open("r", encoding="utf-8") as f:
        for ln in f:
            parts = ln.split()
            if len(parts) != 2:
                continue
            word, idx = parts
            symbols[idx] = word
    return symbols


def read_best_path(path: Path, symbols: Dict[str, str]) -> Dict[str, str]:
    """Read a text best-path archive (``<utt> <id> <id> ...``) into utt -> text."""
    texts: Dict[str, str] = {}
    with path.open("r", encoding="utf-8") as f:
        for ln in f:
            parts = ln.split()
            if not parts:
                continue
            utt, ids = parts[0], parts[1:]
            texts[utt] = " ".join(symbols.get(i, f"#{i}") for i in ids)
    return texts
