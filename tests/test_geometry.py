import numpy as np
import pytest

from ARAP import (
    ConfigurationError,
    MeshData,
    closest_rotation,
    closest_rotations,
    compute_cotangent,
    compute_cotangent_weights,
    edge_weight,
    is_so3,
    so3_violations,
)


# -----------------------------------------------------------------------------
# MeshData
# -----------------------------------------------------------------------------

def test_mesh_data_rejects_bad_shapes():
    with pytest.raises(ConfigurationError):
        MeshData(np.zeros((4, 2)), [[0, 1, 2]])
    with pytest.raises(ConfigurationError):
        MeshData(np.zeros((4, 3)), [[0, 1, 2, 3]])


def test_mesh_data_rejects_out_of_range_face_index():
    with pytest.raises(ConfigurationError):
        MeshData(np.zeros((3, 3)), [[0, 1, 3]])
    with pytest.raises(ValueError):
        MeshData(np.zeros((3, 3)), [[-1, 1, 2]])


def test_mesh_data_is_read_only(unit_square):
    assert unit_square.num_vertices == 4
    assert unit_square.num_faces == 2
    with pytest.raises(ValueError):
        unit_square.vertices[0, 0] = 5.0


# -----------------------------------------------------------------------------
# 余切权重
# -----------------------------------------------------------------------------

def test_equilateral_cotangents():
    mesh = MeshData(
        [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.5, np.sqrt(3.0) / 2.0, 0.0]],
        [[0, 1, 2]],
    )
    np.testing.assert_allclose(compute_cotangent(mesh, 0), np.full(3, 1.0 / np.sqrt(3.0)))


def test_right_angle_cotangent_is_zero(unit_square):
    # 面片 (0, 1, 2) 在顶点 1 处为直角
    np.testing.assert_allclose(compute_cotangent(unit_square, 0), [1.0, 0.0, 1.0], atol=1e-12)


def test_unit_square_weights(unit_square):
    weights = compute_cotangent_weights(unit_square)

    for i, j in [(0, 1), (1, 2), (2, 3), (0, 3)]:
        assert edge_weight(weights, i, j) == pytest.approx(0.5)
        assert edge_weight(weights, j, i) == pytest.approx(0.5)
    # 对角线两侧都是直角
    assert abs(edge_weight(weights, 0, 2)) < 1e-12
    # 不存在的边
    assert edge_weight(weights, 1, 3) == 0.0

    assert weights[(0, 0)] == pytest.approx(-1.0)
    assert weights[(1, 1)] == pytest.approx(-1.0)


def test_diagonal_is_negative_row_sum(lattice):
    weights = compute_cotangent_weights(lattice)

    row_sum = np.zeros(lattice.num_vertices)
    for (i, j), w in weights.items():
        if i == j:
            continue
        assert i < j
        # 锐角网格, 边权重全为正
        assert w > 0.0
        row_sum[i] += w
        row_sum[j] += w

    diagonal = np.array([weights[(i, i)] for i in range(lattice.num_vertices)])
    np.testing.assert_allclose(diagonal, -row_sum, atol=1e-12)


def test_obtuse_angle_gives_negative_weight():
    mesh = MeshData(
        [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.5, 0.05, 0.0]],
        [[0, 1, 2]],
    )
    weights = compute_cotangent_weights(mesh)
    # 顶点 2 处角度接近 180°, cot = (0.2525 + 0.2525 - 1) / (4 * 0.025)
    assert edge_weight(weights, 0, 1) == pytest.approx(-2.475)


def test_degenerate_face_is_rejected():
    mesh = MeshData(
        [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0]],
        [[0, 1, 2]],
    )
    with pytest.raises(ConfigurationError):
        compute_cotangent_weights(mesh)


# -----------------------------------------------------------------------------
# 最近旋转
# -----------------------------------------------------------------------------

def test_closest_rotation_of_scaling_is_identity():
    np.testing.assert_allclose(closest_rotation(np.diag([2.0, 1.0, 1.0])), np.eye(3), atol=1e-12)


def test_closest_rotation_recovers_rotation_factor():
    rng = np.random.default_rng(3)
    Q = closest_rotation(rng.standard_normal((3, 3)))
    S = closest_rotation(Q @ np.diag([3.0, 2.0, 1.0]))
    np.testing.assert_allclose(S, Q, atol=1e-10)


def test_closest_rotation_never_returns_reflection():
    S = closest_rotation(np.diag([1.0, 2.0, -3.0]))
    assert np.linalg.det(S) == pytest.approx(1.0)
    assert is_so3(S)


def test_closest_rotation_beats_other_rotations():
    rng = np.random.default_rng(11)
    M = rng.standard_normal((3, 3))
    S = closest_rotation(M)
    best = np.linalg.norm(S - M)
    for _ in range(50):
        Q = closest_rotation(rng.standard_normal((3, 3)))
        assert best <= np.linalg.norm(Q - M) + 1e-12


def test_batched_projection_matches_single():
    rng = np.random.default_rng(5)
    Ms = rng.standard_normal((40, 3, 3))
    Ss = closest_rotations(Ms)

    assert so3_violations(Ss).size == 0
    for M, S in zip(Ms, Ss):
        np.testing.assert_allclose(S, closest_rotation(M), atol=1e-10)


def test_so3_membership():
    assert is_so3(np.eye(3))
    assert not is_so3(2.0 * np.eye(3))
    assert not is_so3(np.diag([1.0, 1.0, -1.0]))
    assert not is_so3(np.full((3, 3), np.nan))
    np.testing.assert_array_equal(
        so3_violations(np.stack([np.eye(3), np.zeros((3, 3)), np.eye(3)])), [1]
    )
