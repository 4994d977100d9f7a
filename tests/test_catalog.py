import numpy as np
import pytest

from partregrid import (
    MalformedInputFile,
    MalformedPartitionFile,
    NotFound,
    PartitionCatalog,
    PartitionMismatch,
)


def test_from_file_converts_labels_to_zero_based(tmp_path):
    path = tmp_path / "partmesh.txt"
    path.write_text("1\n1\n2\n2\n")

    catalog = PartitionCatalog.from_file(path, num_global_nodes=4)

    np.testing.assert_array_equal(catalog.owners, [0, 0, 1, 1])
    assert catalog.num_ranks == 2
    assert catalog.owner_of(1) == 0
    assert catalog.owner_of(4) == 1
    assert len(catalog) == 4


def test_from_file_accepts_any_whitespace(tmp_path):
    path = tmp_path / "partmesh.txt"
    path.write_text("1 2\n\n3   1\n")
    catalog = PartitionCatalog.from_file(path)
    np.testing.assert_array_equal(catalog.owners, [0, 1, 2, 0])


def test_from_file_short_read(tmp_path):
    path = tmp_path / "partmesh.txt"
    path.write_text("1\n2\n")
    with pytest.raises(MalformedPartitionFile):
        PartitionCatalog.from_file(path, num_global_nodes=3)


def test_from_file_non_integer(tmp_path):
    path = tmp_path / "partmesh.txt"
    path.write_text("1\nx\n")
    with pytest.raises(MalformedPartitionFile) as excinfo:
        PartitionCatalog.from_file(path)
    # catchable as either family
    assert isinstance(excinfo.value, MalformedInputFile)
    assert isinstance(excinfo.value, PartitionMismatch)


def test_from_file_rejects_zero_label(tmp_path):
    path = tmp_path / "partmesh.txt"
    path.write_text("0\n1\n")
    with pytest.raises(MalformedPartitionFile):
        PartitionCatalog.from_file(path)


def test_rank_beyond_job_size():
    with pytest.raises(PartitionMismatch):
        PartitionCatalog([0, 3], num_ranks=2)


def test_owner_of_out_of_range():
    catalog = PartitionCatalog([0, 1])
    with pytest.raises(NotFound):
        catalog.owner_of(0)
    with pytest.raises(NotFound):
        catalog.owner_of(3)
    with pytest.raises(KeyError):
        catalog.owners_of(np.array([1, 5]))


def test_counts_and_displacements():
    catalog = PartitionCatalog([2, 0, 0, 2, 1, 0], num_ranks=4)
    np.testing.assert_array_equal(catalog.owned_counts(), [3, 1, 2, 0])
    np.testing.assert_array_equal(catalog.displacements(), [0, 3, 4, 6])
    assert catalog.owned_counts().sum() == catalog.num_global_nodes
    np.testing.assert_array_equal(catalog.owned_global_ids(0), [2, 3, 6])


def test_owners_are_read_only():
    catalog = PartitionCatalog([0, 1])
    with pytest.raises(ValueError):
        catalog.owners[0] = 1
