import numpy as np

from infantseg.qc_checks import (
    check_binary_mask,
    check_label_within,
    check_volume_conservation,
    failing_checks,
    first_failure_message,
)

from conftest import save_nifti


def test_binary_mask_check(tmp_path):
    good = np.zeros((4, 4, 4))
    good[1:3, 1:3, 1:3] = 1
    assert check_binary_mask("ventricles_mask", save_nifti(tmp_path / "good.nii.gz", good))["passed"] is True

    smeared = good * 0.5
    res = check_binary_mask("ventricles_mask", save_nifti(tmp_path / "smeared.nii.gz", smeared))
    assert res["passed"] is False
    assert res["severity"] == "WARN"
    assert res["name"] == "binary_mask:ventricles_mask"


def test_label_within_footprint(tmp_path):
    atlas = np.zeros((5, 5, 5))
    atlas[1:3, 1:3, 1:3] = 4
    footprint = np.zeros((5, 5, 5))
    footprint[1:4, 1:4, 1:4] = 1
    atlas_path = save_nifti(tmp_path / "atlas.nii.gz", atlas)
    fp_path = save_nifti(tmp_path / "fp.nii.gz", footprint)
    assert check_label_within("ventricles", atlas_path, 4, fp_path)["passed"] is True

    atlas[0, 0, 0] = 4
    res = check_label_within("ventricles", save_nifti(tmp_path / "leak.nii.gz", atlas), 4, fp_path)
    assert res["passed"] is False
    assert "outside fp.nii.gz: 1" in res["message"]


def test_label_within_grid_mismatch(tmp_path):
    atlas_path = save_nifti(tmp_path / "atlas.nii.gz", np.zeros((5, 5, 5)))
    fp_path = save_nifti(tmp_path / "fp.nii.gz", np.zeros((4, 4, 4)))
    res = check_label_within("sub_GM", atlas_path, 2, fp_path)
    assert res["passed"] is False
    assert "Grid mismatch" in res["message"]


def test_volume_conservation():
    two = {"tissue": 100.0, "csf": 50.0}
    assert check_volume_conservation(two, {"a": 100.0, "b": 50.5})["passed"] is True
    assert check_volume_conservation(two, {"a": 100.0, "b": 52.0})["passed"] is False


def test_failure_helpers():
    checks = [
        {"name": "a", "passed": True, "severity": "WARN", "message": "fine"},
        {"name": "b", "passed": False, "severity": "WARN", "message": "bad"},
    ]
    assert [c["name"] for c in failing_checks(checks)] == ["b"]
    assert first_failure_message(checks) == "b: bad"
    assert first_failure_message(checks[:1]) is None
