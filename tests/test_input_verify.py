from pathlib import Path

import numpy as np
import pytest

from infantseg.errors import InputNotFound, TemplateBundleError
from infantseg.S1_input_verify import nifti_extension, run_S1_input_verify, subject_id
from infantseg.templates import TEMPLATES_ENV, load_template_bundle, normalise_age, resolve_templates_root

from conftest import save_nifti


def test_subject_id_strips_nifti_extensions():
    assert subject_id(Path("/data/sub-01_T2w.nii.gz")) == "sub-01_T2w"
    assert subject_id(Path("/data/baby.nii")) == "baby"
    assert subject_id(Path("/data/scan.v2.nii.gz")) == "scan.v2"


def test_nifti_extension():
    assert nifti_extension(Path("a.nii.gz")) == ".nii.gz"
    assert nifti_extension(Path("a.NII")) == ".nii"
    assert nifti_extension(Path("a.mgz")) is None


def test_missing_input_raises_before_anything(tmp_path, templates_root):
    missing = tmp_path / "nope.nii.gz"
    with pytest.raises(InputNotFound) as excinfo:
        run_S1_input_verify(missing, "12", templates_root)
    assert excinfo.value.stage == "S1_input_verify"
    assert excinfo.value.exit_code == 3
    assert "not found" in str(excinfo.value)


def test_non_nifti_input_rejected(tmp_path, templates_root):
    path = tmp_path / "scan.mgz"
    path.write_bytes(b"not nifti")
    with pytest.raises(InputNotFound, match="extension"):
        run_S1_input_verify(path, "12", templates_root)


def test_corrupt_nifti_rejected(tmp_path, templates_root):
    path = tmp_path / "broken.nii.gz"
    path.write_bytes(b"garbage")
    with pytest.raises(InputNotFound, match="not a usable volume"):
        run_S1_input_verify(path, "12", templates_root)


def test_4d_input_rejected(tmp_path, templates_root):
    path = save_nifti(tmp_path / "bold.nii.gz", np.zeros((4, 4, 4, 3)))
    with pytest.raises(InputNotFound, match="3-D"):
        run_S1_input_verify(path, "12", templates_root)


def test_resolves_subject_and_bundle(subject_path, templates_root):
    resolved = run_S1_input_verify(subject_path, "12 months", templates_root)
    assert resolved.subject == "sub-01_T2w"
    assert resolved.extension == ".nii.gz"
    assert resolved.bundle.age == "12"
    assert resolved.bundle.template.name == "template_12_degibbs.nii.gz"
    assert set(resolved.bundle.priors) == {"prior1", "prior2"}
    assert set(resolved.bundle.masks) == {"ventricles_mask", "sub_GM_mask"}
    assert resolved.checks == []


def test_unset_orientation_is_a_warning(tmp_path, templates_root):
    import nibabel as nib

    path = tmp_path / "noorient.nii.gz"
    img = nib.Nifti1Image(np.ones((4, 4, 4), dtype=np.float32), affine=np.eye(4))
    img.set_qform(None, code=0)
    img.set_sform(None, code=0)
    nib.save(img, str(path))
    resolved = run_S1_input_verify(path, "12", templates_root)
    assert [c["name"] for c in resolved.checks] == ["nifti_orientation"]
    assert resolved.checks[0]["severity"] == "WARN"


def test_unknown_age_raises_template_error(subject_path, templates_root):
    with pytest.raises(TemplateBundleError) as excinfo:
        run_S1_input_verify(subject_path, "9", templates_root)
    assert "Known ages" in str(excinfo.value)
    assert excinfo.value.exit_code == 3


def test_incomplete_bundle_lists_missing_members(templates_root):
    (templates_root / "12" / "sub_GM_mask.nii.gz").unlink()
    with pytest.raises(TemplateBundleError, match="sub_GM_mask.nii.gz"):
        load_template_bundle(templates_root, "12")


@pytest.mark.parametrize("token, expected", [("12", "12"), ("6m", "6"), ("24 months", "24"), (" 3mo ", "3")])
def test_normalise_age(token, expected):
    assert normalise_age(token) == expected


def test_resolve_templates_root_precedence(tmp_path, monkeypatch):
    default = tmp_path / "default"
    monkeypatch.delenv(TEMPLATES_ENV, raising=False)
    assert resolve_templates_root(None, default) == default
    monkeypatch.setenv(TEMPLATES_ENV, str(tmp_path / "env"))
    assert resolve_templates_root(None, default) == tmp_path / "env"
    assert resolve_templates_root(tmp_path / "cli", default) == tmp_path / "cli"


def test_input_without_subject_name_rejected(tmp_path, templates_root):
    path = tmp_path / ".nii.gz"
    path.write_bytes(b"\x00" * 352)
    with pytest.raises(InputNotFound, match="no subject part") as excinfo:
        run_S1_input_verify(path, "12", templates_root)
    assert excinfo.value.stage == "S1_input_verify"
