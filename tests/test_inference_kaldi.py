import io
import json
import subprocess
import sys
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pytest
import soundfile as sf

sys.path.append(str(Path(__file__).resolve().parents[1]))

import kaldi_transcribe.models.inference_kaldi as inference_kaldi
import kaldi_transcribe.models.kaldi_decode as kaldi_decode


@pytest.fixture
def kaldi_setup(tmp_path):
    kaldi_dir = tmp_path / "kaldi"
    for name, subdir in kaldi_decode.BIN_DIRS.items():
        binary = kaldi_dir / "src" / subdir / name
        binary.parent.mkdir(parents=True, exist_ok=True)
        binary.write_text("", encoding="utf-8")
    model_dir = tmp_path / "model"
    graph_dir = model_dir / "graph"
    graph_dir.mkdir(parents=True)
    (model_dir / "final.mdl").write_bytes(b"")
    (graph_dir / "HCLG.fst").write_bytes(b"")
    (graph_dir / "words.txt").write_text("<eps> 0\nhello 1\nworld 2\n", encoding="utf-8")
    return kaldi_dir, model_dir, graph_dir


def base_argv(kaldi_dir, model_dir, model_type="gmm"):
    return [
        "--kaldi_dir", str(kaldi_dir),
        "--model_type", model_type,
        "--model_dir", str(model_dir),
    ]


def wavs(tmp_path, seconds):
    paths = []
    for i, s in enumerate(seconds):
        p = tmp_path / f"in{i}.wav"
        sf.write(str(p), np.zeros(int(s * 16000), dtype="int16"), 16000, subtype="PCM_16")
        paths.append(p)
    return paths


def fake_kaldi(monkeypatch, decoded=None):
    """Pretend to decode: write a best path for every staged utterance."""
    state = {}

    def fake_run(cmd):
        for arg in cmd:
            if arg.startswith("scp:") and arg.endswith("wav.scp"):
                state["wav_scp"] = Path(arg[len("scp:"):])
        if cmd[0] == "lattice-best-path":
            out = Path(cmd[-1][len("ark,t:"):])
            utts = [ln.split()[0] for ln in state["wav_scp"].read_text(encoding="utf-8").splitlines()]
            with out.open("w", encoding="utf-8") as fo:
                for u in utts:
                    if decoded is None or u in decoded:
                        fo.write(f"{u} 1 2\n")

    monkeypatch.setattr(kaldi_decode, "run", fake_run)
    monkeypatch.setattr(kaldi_decode.KaldiTools, "binary", lambda self, name: name)


@pytest.mark.parametrize("model_type", ["", "   ", "hmm"])
def test_rejects_bad_model_type(kaldi_setup, model_type):
    kaldi_dir, model_dir, _ = kaldi_setup
    with pytest.raises(SystemExit) as exc:
        inference_kaldi.main(base_argv(kaldi_dir, model_dir, model_type))
    assert "model_type" in str(exc.value.code)


def test_rejects_missing_kaldi_dir(kaldi_setup, tmp_path):
    _, model_dir, _ = kaldi_setup
    with pytest.raises(SystemExit) as exc:
        inference_kaldi.main(base_argv(tmp_path / "nope", model_dir))
    assert "Kaldi directory not found" in str(exc.value.code)


def test_rejects_kaldi_dir_without_src(kaldi_setup, tmp_path):
    _, model_dir, _ = kaldi_setup
    with pytest.raises(SystemExit) as exc:
        inference_kaldi.main(base_argv(model_dir, model_dir))
    assert exc.value.code != 0


def test_rejects_missing_kaldi_root(kaldi_setup, monkeypatch):
    _, model_dir, _ = kaldi_setup
    monkeypatch.delenv("KALDI_ROOT", raising=False)
    with pytest.raises(SystemExit) as exc:
        inference_kaldi.main(["--model_type", "gmm", "--model_dir", str(model_dir)])
    assert exc.value.code != 0


def test_rejects_missing_model_dir(kaldi_setup, tmp_path):
    kaldi_dir, _, _ = kaldi_setup
    with pytest.raises(SystemExit) as exc:
        inference_kaldi.main(base_argv(kaldi_dir, tmp_path / "missing"))
    assert "Model directory not found" in str(exc.value.code)


def test_rejects_missing_graph_dir(kaldi_setup, tmp_path):
    kaldi_dir, model_dir, _ = kaldi_setup
    with pytest.raises(SystemExit) as exc:
        inference_kaldi.main(base_argv(kaldi_dir, model_dir) + ["--graph_dir", str(tmp_path / "g")])
    assert exc.value.code != 0


def test_read_audio_paths_skips_blank_lines():
    stream = io.StringIO("a.wav\n\n  b.wav  \n")
    assert inference_kaldi.read_audio_paths(stream) == [Path("a.wav"), Path("b.wav")]


def test_collect_input_from_manifest(tmp_path):
    manifest = tmp_path / "m.jsonl"
    manifest.write_text('{"audio_filepath": "a.wav"}\n\n{"audio": "b.wav"}\n', encoding="utf-8")
    assert inference_kaldi.collect_input(str(manifest)) == [Path("a.wav"), Path("b.wav")]


@pytest.mark.parametrize("model_type", ["gmm", "nnet3"])
def test_transcribes_batch_to_jsonl(kaldi_setup, tmp_path, monkeypatch, capsys, model_type):
    kaldi_dir, model_dir, _ = kaldi_setup
    paths = wavs(tmp_path, [1.0, 3.0])
    fake_kaldi(monkeypatch)
    clock = iter([100.0, 104.0])
    monkeypatch.setattr(inference_kaldi, "time", SimpleNamespace(perf_counter=lambda: next(clock)))
    monkeypatch.setattr(sys, "stdin", io.StringIO("".join(f"{p}\n" for p in paths)))

    inference_kaldi.main(base_argv(kaldi_dir, model_dir, model_type) + ["--tmp_dir", str(tmp_path / "scratch")])

    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 2
    records = [json.loads(ln) for ln in lines]
    assert [r["audio_filepath"] for r in records] == [str(p) for p in paths]
    assert all(r["text"] == "hello world" for r in records)
    assert [r["duration"] for r in records] == [1.0, 3.0]
    assert [r["transcription_time"] for r in records] == [1.0, 3.0]
    assert sum(r["transcription_time"] for r in records) == pytest.approx(4.0)
    # scratch is removed at exit
    assert list((tmp_path / "scratch").iterdir()) == []


def test_undecoded_files_are_skipped(kaldi_setup, tmp_path, monkeypatch, capsys):
    kaldi_dir, model_dir, _ = kaldi_setup
    paths = wavs(tmp_path, [1.0, 1.0, 1.0])
    fake_kaldi(monkeypatch, decoded={"utt00000", "utt00002"})
    monkeypatch.setattr(sys, "stdin", io.StringIO("\n".join(str(p) for p in paths)))

    inference_kaldi.main(base_argv(kaldi_dir, model_dir))

    captured = capsys.readouterr()
    lines = captured.out.splitlines()
    assert len(lines) == len(paths) - 1
    assert str(paths[1]) in captured.err


def test_strict_mode_fails_on_undecoded(kaldi_setup, tmp_path, monkeypatch):
    kaldi_dir, model_dir, _ = kaldi_setup
    paths = wavs(tmp_path, [1.0, 1.0])
    fake_kaldi(monkeypatch, decoded={"utt00000"})
    monkeypatch.setattr(sys, "stdin", io.StringIO("\n".join(str(p) for p in paths)))
    with pytest.raises(SystemExit) as exc:
        inference_kaldi.main(base_argv(kaldi_dir, model_dir) + ["--strict"])
    assert exc.value.code != 0


def test_toolkit_failure_exit_code_is_propagated(kaldi_setup, tmp_path, monkeypatch, capsys):
    kaldi_dir, model_dir, _ = kaldi_setup
    paths = wavs(tmp_path, [1.0])

    def failing_run(cmd):
        raise subprocess.CalledProcessError(7, cmd)

    monkeypatch.setattr(kaldi_decode, "run", failing_run)
    monkeypatch.setattr(kaldi_decode.KaldiTools, "binary", lambda self, name: name)
    monkeypatch.setattr(sys, "stdin", io.StringIO(f"{paths[0]}\n"))
    with pytest.raises(SystemExit) as exc:
        inference_kaldi.main(base_argv(kaldi_dir, model_dir))
    assert exc.value.code == 7
    assert capsys.readouterr().out == ""


def test_empty_input_writes_nothing(kaldi_setup, monkeypatch, capsys):
    kaldi_dir, model_dir, _ = kaldi_setup
    monkeypatch.setattr(sys, "stdin", io.StringIO("\n\n"))
    inference_kaldi.main(base_argv(kaldi_dir, model_dir))
    assert capsys.readouterr().out == ""


@pytest.mark.parametrize("missing", ["final.mdl", "graph/HCLG.fst", "graph/words.txt"])
def test_rejects_incomplete_model(kaldi_setup, missing):
    kaldi_dir, model_dir, _ = kaldi_setup
    (model_dir / missing).unlink()
    with pytest.raises(SystemExit) as exc:
        inference_kaldi.main(base_argv(kaldi_dir, model_dir))
    assert "Required model file not found" in str(exc.value.code)


def test_rejects_missing_binary_before_running_anything(kaldi_setup, monkeypatch):
    kaldi_dir, model_dir, _ = kaldi_setup
    (kaldi_dir / "src" / "gmmbin" / "gmm-latgen-faster").unlink()
    monkeypatch.setattr(kaldi_decode.shutil, "which", lambda name: None)
    ran = []
    monkeypatch.setattr(kaldi_decode, "run", lambda cmd: ran.append(cmd))
    monkeypatch.setattr(sys, "stdin", io.StringIO("a.wav\n"))
    with pytest.raises(SystemExit) as exc:
        inference_kaldi.main(base_argv(kaldi_dir, model_dir))
    assert "gmm-latgen-faster" in str(exc.value.code)
    assert ran == []


def test_one_odd_path_does_not_abort_the_batch(kaldi_setup, tmp_path, monkeypatch, capsys):
    kaldi_dir, model_dir, _ = kaldi_setup
    good = wavs(tmp_path, [1.0, 1.0])
    odd_dir = tmp_path / "with space"
    odd_dir.mkdir()
    odd = wavs(odd_dir, [1.0])[0]
    typo = tmp_path / "missing.wav"
    fake_kaldi(monkeypatch)
    monkeypatch.setattr(sys, "stdin", io.StringIO("\n".join(str(p) for p in [good[0], odd, typo, good[1]])))

    inference_kaldi.main(base_argv(kaldi_dir, model_dir))

    captured = capsys.readouterr()
    records = [json.loads(ln) for ln in captured.out.splitlines()]
    assert [r["audio_filepath"] for r in records] == [str(good[0]), str(odd), str(good[1])]
    assert f"[SKIP] {typo}" in captured.err


def test_scratch_removed_when_toolkit_fails(kaldi_setup, tmp_path, monkeypatch):
    kaldi_dir, model_dir, _ = kaldi_setup
    paths = wavs(tmp_path, [1.0])

    def failing_run(cmd):
        raise subprocess.CalledProcessError(1, cmd)

    monkeypatch.setattr(kaldi_decode, "run", failing_run)
    monkeypatch.setattr(sys, "stdin", io.StringIO(f"{paths[0]}\n"))
    scratch = tmp_path / "scratch"
    with pytest.raises(SystemExit):
        inference_kaldi.main(base_argv(kaldi_dir, model_dir) + ["--tmp_dir", str(scratch)])
    assert list(scratch.iterdir()) == []


def test_keep_tmp_leaves_scratch_in_place(kaldi_setup, tmp_path, monkeypatch):
    kaldi_dir, model_dir, _ = kaldi_setup
    paths = wavs(tmp_path, [1.0])
    fake_kaldi(monkeypatch)
    monkeypatch.setattr(sys, "stdin", io.StringIO(f"{paths[0]}\n"))
    scratch = tmp_path / "scratch"

    inference_kaldi.main(base_argv(kaldi_dir, model_dir) + ["--tmp_dir", str(scratch), "--keep_tmp"])

    kept = list(scratch.iterdir())
    assert len(kept) == 1
    assert (kept[0] / "data" / "wav.scp").is_file()
    assert (kept[0] / "best_path.int").is_file()


def test_directory_input(kaldi_setup, tmp_path, monkeypatch, capsys):
    kaldi_dir, model_dir, _ = kaldi_setup
    audio_dir = tmp_path / "audio"
    (audio_dir / "nested").mkdir(parents=True)
    paths = wavs(audio_dir, [1.0]) + wavs(audio_dir / "nested", [2.0])
    (audio_dir / "notes.txt").write_text("not audio", encoding="utf-8")
    fake_kaldi(monkeypatch)

    inference_kaldi.main(base_argv(kaldi_dir, model_dir) + ["--input", str(audio_dir)])

    records = [json.loads(ln) for ln in capsys.readouterr().out.splitlines()]
    assert [r["audio_filepath"] for r in records] == [str(p) for p in sorted(paths)]
    assert [r["duration"] for r in records] == [1.0, 2.0]
