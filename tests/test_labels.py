from pathlib import Path

import pytest

from infantseg.labels import ALL_CLASSES, TISSUE_CSF, VENTRICLE_REFINEMENT, Label, LabelTable


def test_builtin_tables_are_one_based():
    assert TISSUE_CSF.as_dict() == {"tissue": 1, "csf": 2}
    assert VENTRICLE_REFINEMENT.as_dict() == {"csf_non_ventricles": 1, "ventricles": 2, "tissue": 3}
    assert ALL_CLASSES.as_dict() == {
        "tissue_non_sub_GM": 1,
        "sub_GM": 2,
        "csf_non_ventricles": 3,
        "ventricles": 4,
    }


def test_stack_order_puts_background_first_and_follows_indices():
    bg = Path("zero.nii.gz")
    volumes = {
        "ventricles": Path("v.nii.gz"),
        "csf_non_ventricles": Path("c.nii.gz"),
        "sub_GM": Path("s.nii.gz"),
        "tissue_non_sub_GM": Path("t.nii.gz"),
    }
    assert ALL_CLASSES.stack_order(bg, volumes) == [
        bg,
        Path("t.nii.gz"),
        Path("s.nii.gz"),
        Path("c.nii.gz"),
        Path("v.nii.gz"),
    ]


def test_stack_order_rejects_missing_or_extra_volumes():
    bg = Path("zero.nii.gz")
    with pytest.raises(ValueError, match="missing=\\['csf'\\]"):
        TISSUE_CSF.stack_order(bg, {"tissue": Path("t.nii.gz")})
    with pytest.raises(ValueError, match="extra=\\['ventricles'\\]"):
        TISSUE_CSF.stack_order(bg, {"tissue": Path("t"), "csf": Path("c"), "ventricles": Path("v")})


def test_table_validation():
    with pytest.raises(ValueError, match="1..N"):
        LabelTable(key="bad", labels=(Label("a", 0), Label("b", 1)))
    with pytest.raises(ValueError, match="duplicate"):
        LabelTable.from_names("dup", ["a", "a"])


def test_index_of():
    assert ALL_CLASSES.index_of("ventricles") == 4
    with pytest.raises(KeyError):
        ALL_CLASSES.index_of("csf")
