from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Set, cast

import nibabel as nib
import numpy as np
import pytest

SHAPE = (12, 12, 12)
BRAIN = (slice(2, 10), slice(2, 10), slice(2, 10))
CSF_CORE = (slice(3, 9), slice(3, 9), slice(4, 8))
VENTRICLES = (slice(3, 9), slice(3, 9), slice(3, 9))
SUB_GM = (slice(2, 4), slice(2, 10), slice(2, 10))


def save_nifti(path: Path, data: np.ndarray, affine: Optional[np.ndarray] = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    affine = np.eye(4) if affine is None else affine
    img = nib.Nifti1Image(np.asarray(data, dtype=np.float32), affine=affine)
    img.set_qform(affine, code=1)
    img.set_sform(affine, code=1)
    nib.save(img, str(path))
    return path


def load_data(path: Path) -> np.ndarray:
    return np.asarray(cast(Any, nib.load(str(path))).get_fdata())


def _region(region) -> np.ndarray:
    data = np.zeros(SHAPE, dtype=np.float32)
    data[region] = 1.0
    return data


def make_subject(path: Path) -> Path:
    data = np.zeros(SHAPE, dtype=np.float32)
    data[BRAIN] = 100.0
    return save_nifti(path, data)


def make_template_bundle(root: Path, age: str = "12") -> Path:
    bundle = root / age
    brain = _region(BRAIN)
    csf_core = _region(CSF_CORE)
    prior1 = brain * 0.7
    prior1[CSF_CORE] = 0.2
    prior2 = brain * 0.3
    prior2[CSF_CORE] = 0.8
    sub_gm = _region(SUB_GM) * (1 - csf_core)
    save_nifti(bundle / f"template_{age}_degibbs.nii.gz", brain * 100.0)
    save_nifti(bundle / "brainMask.nii.gz", brain)
    save_nifti(bundle / "prior1.nii.gz", prior1)
    save_nifti(bundle / "prior2.nii.gz", prior2)
    save_nifti(bundle / "ventricles_mask.nii.gz", _region(VENTRICLES))
    save_nifti(bundle / "sub_GM_mask.nii.gz", sub_gm)
    return root


def _flag(cmd: List[str], flag: str) -> str:
    return cmd[cmd.index(flag) + 1]


def _neighbours(data: np.ndarray, reducer) -> np.ndarray:
    out = data.copy()
    for axis in range(3):
        for step in (1, -1):
            out = reducer(out, np.roll(data, step, axis=axis))
    return out


class FakeProcess:
    """Finished `subprocess.Popen` look-alike."""

    pid = -1

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "", exc: Optional[Exception] = None):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.exc = exc
        self.timeouts: List[Optional[float]] = []

    def communicate(self, timeout=None):
        self.timeouts.append(timeout)
        if self.exc is not None:
            exc, self.exc = self.exc, None
            raise exc
        return self.stdout, self.stderr


class FakeTools:
    """
    Stand-in for `subprocess.Popen` that emulates the external tools on small
    volumes with numpy, recording every command.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.fail: Set[str] = set()
        self.silent: Set[str] = set()
        self.envs: List[Dict[str, str]] = []

    def __call__(self, cmd, **kwargs):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        self.envs.append(kwargs.get("env") or {})
        tool = cmd[0]
        if tool in self.fail:
            return FakeProcess(returncode=1, stdout="", stderr=f"{tool}: simulated failure")
        stdout = ""
        if tool not in self.silent:
            handler = getattr(self, "_" + tool.replace(".sh", "").replace("-", "_"), None)
            if handler is None:
                raise FileNotFoundError(tool)
            stdout = handler(cmd) or ""
        return FakeProcess(returncode=0, stdout=stdout, stderr="")

    def commands(self, tool: str) -> List[List[str]]:
        return [c for c in self.calls if c[0] == tool]

    def _mri_synthstrip(self, cmd: List[str]) -> None:
        data = load_data(Path(_flag(cmd, "-i")))
        mask = (data > 0).astype(np.float32)
        save_nifti(Path(_flag(cmd, "-o")), data * mask)
        save_nifti(Path(_flag(cmd, "-m")), mask)

    def _antsRegistrationSyN(self, cmd: List[str]) -> None:
        prefix = _flag(cmd, "-o")
        reference = load_data(Path(_flag(cmd, "-f")))
        Path(prefix + "0GenericAffine.mat").write_text("affine", encoding="utf-8")
        zeros = np.zeros(reference.shape + (1, 3), dtype=np.float32)
        save_nifti(Path(prefix + "1Warp.nii.gz"), zeros)
        save_nifti(Path(prefix + "1InverseWarp.nii.gz"), zeros)

    def _antsApplyTransforms(self, cmd: List[str]) -> None:
        save_nifti(Path(_flag(cmd, "-o")), load_data(Path(_flag(cmd, "-i"))))

    def _antsAtroposN4(self, cmd: List[str]) -> None:
        mask = load_data(Path(_flag(cmd, "-x")))
        pattern = _flag(cmd, "-p")
        prefix = _flag(cmd, "-o")
        for k in range(1, int(_flag(cmd, "-c")) + 1):
            prior = load_data(Path(pattern % k))
            save_nifti(Path(f"{prefix}SegmentationPosteriors{k}.nii.gz"), prior * mask)

    def _fslmaths(self, cmd: List[str]) -> None:
        data = load_data(Path(cmd[1]))
        args = cmd[2:-1]
        i = 0
        while i < len(args):
            op = args[i]
            if op in ("-mul", "-sub"):
                operand = args[i + 1]
                try:
                    other = float(operand)
                except ValueError:
                    other = load_data(Path(operand))
                data = data * other if op == "-mul" else data - other
                i += 2
                continue
            if op == "-thr":
                data = np.where(data < float(args[i + 1]), 0.0, data)
                i += 2
                continue
            if op == "-uthr":
                data = np.where(data > float(args[i + 1]), 0.0, data)
                i += 2
                continue
            if op == "-bin":
                data = (data != 0).astype(np.float32)
            elif op == "-dilM":
                data = _neighbours(data, np.maximum)
            elif op == "-ero":
                data = _neighbours((data > 0).astype(np.float32), np.minimum)
            elif op == "-Tmaxn":
                data = np.argmax(data, axis=3).astype(np.float32)
            elif op == "-Tmean":
                data = data.mean(axis=3)
            else:
                raise AssertionError(f"fslmaths op not emulated: {op}")
            i += 1
        save_nifti(Path(cmd[-1]), data)

    def _fslmerge(self, cmd: List[str]) -> None:
        assert cmd[1] == "-t"
        volumes = [load_data(Path(p)) for p in cmd[3:]]
        save_nifti(Path(cmd[2]), np.stack(volumes, axis=3))

    def _fslval(self, cmd: List[str]) -> str:
        data = load_data(Path(cmd[1]))
        return f"{data.shape[3] if data.ndim > 3 else 1} \n"

    def _fslstats(self, cmd: List[str]) -> str:
        image = load_data(Path(cmd[1]))
        mask = load_data(Path(_flag(cmd, "-k"))) > 0
        count = int(np.count_nonzero(image[mask]))
        return f"{count} {float(count):.6f} \n"

    def _slicer(self, cmd: List[str]) -> None:
        Path(_flag(cmd, "-a")).write_bytes(b"\x89PNG fake")

    def _pngappend(self, cmd: List[str]) -> None:
        Path(cmd[-1]).write_bytes(b"\x89PNG fake")


@pytest.fixture
def fake_tools(monkeypatch: pytest.MonkeyPatch) -> FakeTools:
    tools = FakeTools()
    monkeypatch.setattr("subprocess.Popen", tools)
    return tools


@pytest.fixture
def templates_root(tmp_path: Path) -> Path:
    return make_template_bundle(tmp_path / "templates")


@pytest.fixture
def subject_path(tmp_path: Path) -> Path:
    return make_subject(tmp_path / "input" / "sub-01_T2w.nii.gz")
