import numpy as np
import pytest

from ARAP import MeshData


def make_lattice(rows=3, cols=3, jitter=0.0, seed=0):
    """
    (rows+1) x (cols+1) 顶点的等边三角形网格, 可选随机扰动。

    扰动幅度 ≤ 0.05 时所有内角仍为锐角, 余切权重均为正。
    """
    rng = np.random.default_rng(seed)
    vertices = np.array(
        [[i + 0.5 * j, j * np.sqrt(3.0) / 2.0, 0.0]
         for j in range(rows + 1) for i in range(cols + 1)],
        dtype=np.float64,
    )
    if jitter > 0.0:
        vertices += rng.uniform(-jitter, jitter, vertices.shape)

    def idx(i, j):
        return j * (cols + 1) + i

    faces = []
    for j in range(rows):
        for i in range(cols):
            a, b, c, d = idx(i, j), idx(i + 1, j), idx(i, j + 1), idx(i + 1, j + 1)
            faces.append([a, b, c])
            faces.append([b, d, c])
    return MeshData(vertices, faces)


def lattice_handles(rows=3, cols=3):
    """底行与顶行顶点索引。"""
    bottom = list(range(cols + 1))
    top = [rows * (cols + 1) + i for i in range(cols + 1)]
    return bottom + top


@pytest.fixture
def unit_square():
    vertices = [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [1.0, 1.0, 0.0], [0.0, 1.0, 0.0]]
    faces = [[0, 1, 2], [0, 2, 3]]
    return MeshData(vertices, faces)


@pytest.fixture
def square_targets():
    # 顶点 0 固定在原处, 对角顶点 2 沿 x 平移 0.1
    return np.array([[0.0, 0.0, 0.0], [1.1, 1.0, 0.0]])


@pytest.fixture
def lattice():
    return make_lattice(rows=3, cols=3, jitter=0.05, seed=7)


@pytest.fixture
def lattice_targets(lattice):
    handles = lattice_handles()
    targets = lattice.vertices[handles].copy()
    # 顶行整体抬升
    targets[len(handles) // 2:] += [0.0, 0.0, 0.3]
    return handles, targets
