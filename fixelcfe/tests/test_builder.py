import numpy as np
import pytest

from fixelcfe.fixel.builder import FixelAssigner, generate_matrix
from fixelcfe.fixel.tracks import TrackMapper, VoxelHits
from fixelcfe.io.fixel import FixelIndex
from fixelcfe.utils.exceptions import ConnectivityError


def crossing_index(length=5):
    counts = np.full((length, 1, 1), 2, dtype=np.int64)
    offsets = (2 * np.arange(length)).reshape(length, 1, 1)
    directions = np.tile([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], (length, 1))
    return FixelIndex(counts=counts, offsets=offsets, affine=np.eye(4)), directions


def hits(voxels, direction):
    voxels = np.asarray(voxels, dtype=np.int64)
    directions = np.tile(np.asarray(direction, dtype=np.float64), (len(voxels), 1))
    return VoxelHits(voxels, directions)


def test_track_mapper_visits_every_voxel():
    mapper = TrackMapper(np.eye(4), (5, 1, 1))
    result = mapper(np.array([[-0.4, 0.0, 0.0], [4.4, 0.0, 0.0]]))

    np.testing.assert_array_equal(result.voxels, [[i, 0, 0] for i in range(5)])
    np.testing.assert_allclose(result.directions, np.tile([1.0, 0.0, 0.0], (5, 1)))


def test_track_mapper_outside_image():
    mapper = TrackMapper(np.eye(4), (5, 1, 1))
    assert len(mapper(np.array([[0.0, 5.0, 0.0], [4.0, 5.0, 0.0]])).voxels) == 0
    assert len(mapper(np.array([[1.0, 0.0, 0.0]])).voxels) == 0


def test_track_mapper_rejects_malformed():
    mapper = TrackMapper(np.eye(4), (5, 1, 1))
    with pytest.raises(ConnectivityError):
        mapper(np.zeros((4, 2)))
    with pytest.raises(ConnectivityError):
        mapper(np.array([[0.0, 0.0, 0.0], [np.nan, 0.0, 0.0]]))


def test_assigner_picks_closest_fixel():
    fixel_index, directions = crossing_index()
    assigner = FixelAssigner(fixel_index, directions)

    assert assigner(hits([[0, 0, 0], [1, 0, 0]], [1.0, 0.0, 0.0])) == [0, 2]
    assert assigner(hits([[3, 0, 0]], [0.0, -1.0, 0.0])) == [7]


def test_assigner_angle_threshold():
    fixel_index, directions = crossing_index()
    tangent = [np.cos(np.deg2rad(30.0)), np.sin(np.deg2rad(30.0)), 0.0]

    assert FixelAssigner(fixel_index, directions, angle_threshold=45.0)(
        hits([[0, 0, 0]], tangent)) == [0]
    assert FixelAssigner(fixel_index, directions, angle_threshold=20.0)(
        hits([[0, 0, 0]], tangent)) == []


def test_assigner_mask():
    fixel_index, directions = crossing_index()
    mask = np.ones(10, dtype=bool)
    mask[2] = False
    assigner = FixelAssigner(fixel_index, directions, mask=mask)

    assert assigner(hits([[0, 0, 0], [1, 0, 0], [2, 0, 0]], [1.0, 0.0, 0.0])) == [0, 4]


def test_assigner_masked_closest_fixel_drops_hit():
    fixel_index, directions = crossing_index()
    mask = np.ones(10, dtype=bool)
    mask[2] = False
    tangent = [np.cos(np.deg2rad(30.0)), np.sin(np.deg2rad(30.0)), 0.0]
    # Both fixels of a voxel are within 70 degrees of the tangent
    assigner = FixelAssigner(fixel_index, directions, angle_threshold=70.0, mask=mask)

    assert assigner(hits([[0, 0, 0], [1, 0, 0]], tangent)) == [0]


def test_assigner_size_mismatch():
    fixel_index, directions = crossing_index()
    with pytest.raises(ConnectivityError):
        FixelAssigner(fixel_index, directions[:5])
    with pytest.raises(ConnectivityError):
        FixelAssigner(fixel_index, directions, mask=np.ones(3, dtype=bool))


def test_generate_matrix_from_hits():
    fixel_index, directions = crossing_index()
    streamlines = [
        hits([[0, 0, 0], [1, 0, 0], [2, 0, 0]], [1.0, 0.0, 0.0]),
        hits([[2, 0, 0]], [0.0, 1.0, 0.0]),
        hits([[1, 0, 0], [2, 0, 0]], [1.0, 0.0, 0.0]),
    ]

    matrix = generate_matrix(streamlines, fixel_index, directions, batch_size=2)

    assert len(matrix) == 10
    assert matrix[0].indices == [0, 2, 4]
    assert matrix[0].counts == [1, 1, 1]
    assert matrix[2].indices == [0, 2, 4]
    assert matrix[2].counts == [1, 2, 2]
    assert matrix[2].count() == 2
    assert matrix[5].indices == [5]
    assert matrix[5].count() == 1
    assert len(matrix[1]) == 0 and matrix[1].count() == 0


def test_generate_matrix_from_points_in_parallel():
    fixel_index, directions = crossing_index()
    streamlines = [np.array([[-0.4, 0.0, 0.0], [4.4, 0.0, 0.0]])] * 6
    streamlines.append(np.array([[3.0, -0.4, 0.0], [3.0, 0.4, 0.0]]))

    serial = generate_matrix(streamlines, fixel_index, directions, batch_size=2)
    parallel = generate_matrix(streamlines, fixel_index, directions, batch_size=2, n_jobs=2)

    for a, b in zip(serial, parallel):
        assert a.indices == b.indices
        assert a.counts == b.counts
        assert a.count() == b.count()
    assert serial[4].indices == [0, 2, 4, 6, 8]
    assert serial[4].counts == [6] * 5
    assert serial[7].indices == [7]


def test_generate_matrix_malformed_streamline():
    fixel_index, directions = crossing_index()
    with pytest.raises(ConnectivityError):
        generate_matrix([np.zeros((3, 2))], fixel_index, directions)
