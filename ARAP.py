"""
ARAP (As-Rigid-As-Possible) 网格变形的公共基础模块。

本模块为 ADMM.py 使用的纯算法层, 提供:
    - MeshData        : 与 DCC 解耦的三角网格数据结构
    - CholeskyFactor  : 稀疏对称正定矩阵的一次分解 / 多次回代封装
    - Energy          : 能量分项报告 (只读快照)
    - 余切权重        : 由静止姿态网格计算离散 Laplace-Beltrami 权重
    - 最近旋转        : Orthogonal Procrustes 问题的 SVD 闭合解
    - Solver          : 求解器基类 (网格存储、顶点分类、外层迭代循环)

算法参考
--------
Sorkine, O., & Alexa, M. (2007).
    As-rigid-as-possible surface modeling.
    Eurographics Symposium on Geometry Processing (SGP), pp. 109-116.

能量定义
--------
    E(P') = Σ_{(i,j)} w_ij ‖(p'_i - p'_j) - R_i(p_i - p_j)‖²

    其中 (i, j) 遍历每个面片的有向边, w_ij 为余切权重, R_i 为顶点 i 处的局部旋转。

依赖
----
    numpy  >= 1.20
    scipy  >= 1.6
    scikit-sparse (可选, 提供 cholmod 后端, 速度更快)
"""

from __future__ import annotations

import enum
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla


# =============================================================================
# 常量
# =============================================================================

#: SO(3) 判定与线性求解残差的统一阈值
MATRIX_DIFF_THRESHOLD: float = 1e-6

#: 退化三角形判定:2·面积 ≤ 阈值 · (a² + b² + c²) 时视为退化
DEGENERATE_AREA_TOLERANCE: float = 1e-12

#: 系统矩阵对称性检查的相对阈值
SYMMETRY_TOLERANCE: float = 1e-10

DEFAULT_MAX_ITERATION: int = 20

#: 能量报告中的标准分项名称
ENERGY_ELASTIC: str = "elastic"
ENERGY_ROTATION_PENALTY: str = "rotation-penalty"
ENERGY_TOTAL: str = "total"

# 面片内顶点序号 → 其对边的两个顶点序号
# 0 => A 对边 (B, C), 1 => B 对边 (C, A), 2 => C 对边 (A, B)
EDGE_MAP: Tuple[Tuple[int, int], ...] = ((1, 2), (2, 0), (0, 1))


# =============================================================================
# 错误类型
# =============================================================================

class ArapError(Exception):
    """本模块所有错误的基类。"""


class ConfigurationError(ArapError, ValueError):
    """
    调用方违反接口约定:维度不匹配、索引越界、调用顺序错误、退化网格等。

    属于编程错误, 立即报告, 不可重试。
    """


class NumericalInvariantError(ArapError, RuntimeError):
    """
    数值不变量被破坏:矩阵分解失败、线性求解残差过大、投影结果不属于 SO(3)。

    说明输入几何有问题或实现存在缺陷, 不可重试。
    """


# =============================================================================
# 数据结构:与 DCC 解耦的三角网格
# =============================================================================

class MeshData:
    """
    与 DCC 工具无关的三角网格数据结构 (静止姿态, 构造后不再修改) 。

    Attributes
    ----------
    vertices : np.ndarray, shape (N, 3), dtype float64
        顶点坐标数组, N 为顶点数。
    faces : np.ndarray, shape (F, 3), dtype int64
        三角面片索引数组, 每行为一个三角形的三顶点索引。
    """

    def __init__(self, vertices: np.ndarray, faces: np.ndarray) -> None:
        """
        Parameters
        ----------
        vertices : array_like, shape (N, 3)
            顶点坐标, 将被转换为 float64 存储。
        faces : array_like, shape (F, 3)
            三角面片顶点索引, 将被转换为 int64 存储。

        Raises
        ------
        ConfigurationError
            若 vertices 不为 (N, 3)、faces 不为 (F, 3), 或面片索引超出 [0, N-1]。
        """
        self.vertices: np.ndarray = np.array(vertices, dtype=np.float64)
        self.faces:    np.ndarray = np.array(faces,    dtype=np.int64)

        if self.vertices.ndim != 2 or self.vertices.shape[1] != 3:
            raise ConfigurationError(
                f"vertices 应为 shape (N, 3), 实际 shape: {self.vertices.shape}"
            )
        if self.faces.size == 0:
            self.faces = self.faces.reshape(0, 3)
        if self.faces.ndim != 2 or self.faces.shape[1] != 3:
            raise ConfigurationError(
                f"faces 应为 shape (F, 3), 实际 shape: {self.faces.shape}"
            )
        if self.faces.size and (
            self.faces.min() < 0 or self.faces.max() >= self.num_vertices
        ):
            raise ConfigurationError(
                f"面片索引超出合法范围 [0, {self.num_vertices - 1}]。"
            )

        self.vertices.setflags(write=False)
        self.faces.setflags(write=False)

    @property
    def num_vertices(self) -> int:
        """顶点总数 N。"""
        return self.vertices.shape[0]

    @property
    def num_faces(self) -> int:
        """面片总数 F。"""
        return self.faces.shape[0]

    def __repr__(self) -> str:
        return f"MeshData(vertices={self.num_vertices}, faces={self.num_faces})"


# =============================================================================
# Cholesky 分解封装 (稀疏对称正定矩阵求解器)
# =============================================================================

class CholeskyFactor:
    """
    稀疏对称正定矩阵的线性方程组求解器。

    优先尝试使用 scikit-sparse 提供的 CHOLMOD 超节点 Cholesky 分解;
    若不可用, 退回到 scipy.sparse.linalg.splu (SuperLU, 对称模式 + 对角主元) 。
    SuperLU 后端在行列置换一致时检查主元符号, 以拒绝非正定矩阵。

    分解只执行一次, 之后所有 solve() 调用只读共享该因子。

    Attributes
    ----------
    _factor : object or None
        已完成分解的因子对象, factorization() 调用后有效。
    _use_cholmod : bool
        标识当前是否使用 CHOLMOD 后端。
    """

    def __init__(self, prefer_cholmod: bool = True) -> None:
        self._factor = None
        self._size: Optional[int] = None
        self._use_cholmod: bool = False

        if prefer_cholmod:
            try:
                from sksparse.cholmod import CholmodError  # type: ignore
                from sksparse.cholmod import cholesky as _cholmod_fn  # type: ignore
                self._cholmod_fn = _cholmod_fn
                self._cholmod_error = CholmodError
                self._use_cholmod = True
            except ImportError:
                self._use_cholmod = False

    @property
    def backend(self) -> str:
        """返回当前实际使用的求解后端名称:'cholmod' 或 'superlu'。"""
        return "cholmod" if self._use_cholmod else "superlu"

    @property
    def is_factorized(self) -> bool:
        return self._factor is not None

    def factorization(self, A: sp.spmatrix) -> None:
        """
        对稀疏对称正定矩阵 A 进行分解, 并将因子缓存供后续 solve() 调用。

        Parameters
        ----------
        A : sp.spmatrix, shape (M, M)
            对称正定稀疏矩阵。

        Raises
        ------
        NumericalInvariantError
            若 A 不是方阵、不对称、奇异或被后端判定为非正定。
        """
        if A.shape[0] != A.shape[1]:
            raise NumericalInvariantError(f"矩阵 A 须为方阵, 实际 shape: {A.shape}")

        A_csc = sp.csc_matrix(A, dtype=np.float64)
        scale = max(1.0, float(abs(A_csc).max())) if A_csc.nnz else 1.0
        asym  = abs(A_csc - A_csc.T)
        if asym.nnz and float(asym.max()) > SYMMETRY_TOLERANCE * scale:
            raise NumericalInvariantError(
                f"矩阵 A 不对称 (最大偏差 {float(asym.max()):.3e}) , 无法进行 Cholesky 分解。"
            )

        if self._use_cholmod:
            try:
                self._factor = self._cholmod_fn(A_csc)
            except self._cholmod_error as exc:
                raise NumericalInvariantError(f"Cholesky 分解失败: {exc}") from exc
        else:
            try:
                lu = spla.splu(
                    A_csc,
                    permc_spec="MMD_AT_PLUS_A",
                    diag_pivot_thresh=0.0,
                    options=dict(SymmetricMode=True),
                )
            except RuntimeError as exc:
                # SuperLU 对奇异矩阵抛出 "Factor is exactly singular"
                raise NumericalInvariantError(f"矩阵分解失败: {exc}") from exc

            # 行列置换一致时 U 的对角元即 LDLᵀ 的主元, 全正 ⇔ 正定
            if np.array_equal(lu.perm_r, lu.perm_c):
                pivots = lu.U.diagonal()
                if np.any(pivots <= 0.0):
                    raise NumericalInvariantError(
                        f"矩阵非正定: 最小主元 {float(pivots.min()):.3e}"
                    )
            self._factor = lu

        self._size = A_csc.shape[0]

    def solve(self, b: np.ndarray) -> np.ndarray:
        """
        利用已缓存的分解因子求解线性方程组 A x = b。

        Parameters
        ----------
        b : np.ndarray, shape (M,) or (M, K)
            右端向量 (K=1) 或矩阵 (K 列同时求解) 。

        Returns
        -------
        x : np.ndarray, shape (M,) or (M, K)
            线性方程组的解。

        Raises
        ------
        ConfigurationError
            若在 factorization() 之前调用本方法, 或 b 的行数与矩阵阶数不一致。
        """
        if self._factor is None:
            raise ConfigurationError("请先调用 factorization() 完成矩阵分解, 再调用 solve()。")

        b = np.asarray(b, dtype=np.float64)
        if b.shape[0] != self._size:
            raise ConfigurationError(
                f"右端项行数 {b.shape[0]} 与矩阵阶数 {self._size} 不一致。"
            )

        if self._use_cholmod:
            return self._factor.solve_A(b)
        return self._factor.solve(b)


# =============================================================================
# 能量报告
# =============================================================================

class Energy:
    """
    能量分项报告: 名称 → 标量值 的有序映射。

    仅用于诊断, 每次按需由求解器当前状态重新计算, 不做持久化。
    """

    def __init__(self) -> None:
        self._terms: Dict[str, float] = {}

    def add_energy_type(self, name: str, value: float) -> None:
        self._terms[name] = float(value)

    def __getitem__(self, name: str) -> float:
        return self._terms[name]

    def __contains__(self, name: object) -> bool:
        return name in self._terms

    def names(self) -> List[str]:
        return list(self._terms)

    @property
    def total(self) -> float:
        return self._terms.get(ENERGY_TOTAL, float("nan"))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Energy):
            return NotImplemented
        return self._terms == other._terms

    def __repr__(self) -> str:
        terms = ", ".join(f"{k}={v:.6e}" for k, v in self._terms.items())
        return f"Energy({terms})"


# =============================================================================
# 几何:余切权重
# =============================================================================

def _edge_key(i: int, j: int) -> Tuple[int, int]:
    return (i, j) if i <= j else (j, i)


def compute_cotangent(mesh: MeshData, face_id: int) -> np.ndarray:
    """
    计算三角形三个内角的余切值 (cotA, cotB, cotC)。

    三角形记为:
                A
               /  \\
            c /    \\ b
             /      \\
            B--------C
                a

    由余弦定理与面积公式 (area = ½·b·c·sinA) 得:
        cotA = (b² + c² - a²) / (4·area)

    Parameters
    ----------
    mesh : MeshData
        静止姿态网格。
    face_id : int
        面片索引。

    Returns
    -------
    cotangent : np.ndarray, shape (3,)
        (cotA, cotB, cotC), 依次对应 faces[face_id] 的三个顶点。

    Raises
    ------
    ConfigurationError
        若三角形退化 (面积相对边长平方和近似为零) 。
    """
    A, B, C = mesh.vertices[mesh.faces[face_id]]
    a_squared = float(np.dot(B - C, B - C))
    b_squared = float(np.dot(C - A, C - A))
    c_squared = float(np.dot(A - B, A - B))
    area = float(np.linalg.norm(np.cross(B - A, C - A))) / 2.0

    if 2.0 * area <= DEGENERATE_AREA_TOLERANCE * (a_squared + b_squared + c_squared):
        raise ConfigurationError(
            f"面片 {face_id} 退化 (面积 {area:.3e}) , 余切权重无定义。"
        )

    four_area = 4.0 * area
    return np.array(
        [
            (b_squared + c_squared - a_squared) / four_area,
            (c_squared + a_squared - b_squared) / four_area,
            (a_squared + b_squared - c_squared) / four_area,
        ],
        dtype=np.float64,
    )


def compute_cotangent_weights(mesh: MeshData) -> Dict[Tuple[int, int], float]:
    """
    由静止姿态网格计算余切权重表。

    对每个面片的每个内角, 将 cot/2 累加到其对边 (i, j) 上,
    并从两端点的对角项 (i, i)、(j, j) 中减去, 使对角项等于行和的相反数
    (离散 Laplacian) 。内部边被两个面片共享, 故采用累加而非覆盖。

    Parameters
    ----------
    mesh : MeshData
        静止姿态网格。

    Returns
    -------
    weights : Dict[Tuple[int, int], float]
        key=(min(i,j), max(i,j)) 为边权重, key=(i, i) 为对角项。
    """
    weights: Dict[Tuple[int, int], float] = {}

    for f in range(mesh.num_faces):
        cotangent = compute_cotangent(mesh, f)
        face = mesh.faces[f]
        for corner, (a, b) in enumerate(EDGE_MAP):
            first, second = int(face[a]), int(face[b])
            half_cot = cotangent[corner] / 2.0

            key = _edge_key(first, second)
            weights[key] = weights.get(key, 0.0) + half_cot
            weights[(first, first)]   = weights.get((first, first), 0.0) - half_cot
            weights[(second, second)] = weights.get((second, second), 0.0) - half_cot

    return weights


def edge_weight(weights: Dict[Tuple[int, int], float], i: int, j: int) -> float:
    """读取 (i, j) 的权重, 不存在时为 0。"""
    return weights.get(_edge_key(int(i), int(j)), 0.0)


# =============================================================================
# 最近旋转 (Orthogonal Procrustes)
# =============================================================================

def closest_rotation(M: np.ndarray) -> np.ndarray:
    """
    求与 3x3 矩阵 M 距离 (Frobenius 范数) 最近的旋转矩阵 S ∈ SO(3)。

    SVD 分解:M = U Σ Vᵀ, 则 S = U Vᵀ。
    若 det(U Vᵀ) < 0 (反射) , 翻转最小奇异值对应的 U 列, 保证 det(S) = +1。

    Parameters
    ----------
    M : array_like, shape (3, 3)

    Returns
    -------
    S : np.ndarray, shape (3, 3)
        真旋转矩阵。
    """
    U, _sigma, Vt = np.linalg.svd(np.asarray(M, dtype=np.float64))
    S = U @ Vt
    if np.linalg.det(S) < 0.0:
        U[:, -1] *= -1.0
        S = U @ Vt
    return S


def closest_rotations(Ms: np.ndarray) -> np.ndarray:
    """closest_rotation 的批量版本, 输入输出均为 (N, 3, 3), 逐顶点相互独立。"""
    Ms = np.asarray(Ms, dtype=np.float64).reshape(-1, 3, 3)
    U, _sigma, Vt = np.linalg.svd(Ms)
    S = U @ Vt

    flip = np.linalg.det(S) < 0.0
    if np.any(flip):
        U[flip, :, -1] *= -1.0
        S[flip] = U[flip] @ Vt[flip]
    return S


def so3_violations(Ss: np.ndarray, tol: float = MATRIX_DIFF_THRESHOLD) -> np.ndarray:
    """
    批量检查 (N, 3, 3) 矩阵是否属于 SO(3), 返回不满足条件的下标数组。

    判据:‖S Sᵀ - I‖² ≤ tol 且 |det(S) - 1| ≤ tol。NaN 视为不满足。
    """
    Ss = np.asarray(Ss, dtype=np.float64).reshape(-1, 3, 3)
    gram = Ss @ np.transpose(Ss, (0, 2, 1)) - np.eye(3)
    orth_err = np.sum(gram * gram, axis=(1, 2))
    det_err  = np.abs(np.linalg.det(Ss) - 1.0)
    ok = (orth_err <= tol) & (det_err <= tol)
    return np.flatnonzero(~ok)


def is_so3(S: np.ndarray, tol: float = MATRIX_DIFF_THRESHOLD) -> bool:
    """判断单个 3x3 矩阵是否属于 SO(3)。"""
    return so3_violations(S, tol).size == 0


# =============================================================================
# 求解器基类:网格存储、顶点分类、外层迭代循环
# =============================================================================

class VertexType(enum.Enum):
    FREE = "free"
    FIXED = "fixed"


class VertexInfo(NamedTuple):
    """
    顶点分类信息。

    type 为 FIXED 时, pos 为目标位置数组中的行号;
    type 为 FREE 时, pos 为线性系统未知量中的列号。
    """
    type: VertexType
    pos: int


class SolverState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    PRECOMPUTED = "precomputed"
    PREPROCESSED = "preprocessed"
    ITERATING = "iterating"


class Solver:
    """
    网格变形求解器基类。

    负责存储静止姿态网格与固定/自由顶点分类, 并约定统一的调用流程:

        solver.precompute()                    # 仅一次
        solver.solve_preprocess(targets)       # 每个新的目标位置请求
        solver.solve_one_iteration()           # 重复调用, 次数由调用方决定
        solver.compute_energy()                # 任意时刻诊断查询

    子类实现 _precompute / _solve_preprocess / _solve_one_iteration /
    _compute_energy 四个钩子; 状态检查与参数校验由基类统一完成。

    Parameters
    ----------
    mesh : MeshData
        静止姿态网格。
    fixed : Sequence[int]
        固定 (把手) 顶点索引, 顺序即目标位置数组的行顺序。
    max_iteration : int, optional
        solve() 外层循环的最大迭代次数 (建议值, 单步接口不强制) 。
    verbose : bool, optional
        是否打印进度日志, 默认 False。

    Raises
    ------
    ConfigurationError
        若 fixed 为空、含越界或重复索引, 或 max_iteration 为负。
    """

    #: 进度日志前缀
    tag: str = "[Solver]"

    def __init__(
        self,
        mesh:          MeshData,
        fixed:         Sequence[int],
        max_iteration: int  = DEFAULT_MAX_ITERATION,
        verbose:       bool = False,
    ) -> None:
        n: int = mesh.num_vertices
        fixed_arr = np.asarray(fixed, dtype=np.int64).reshape(-1)

        if fixed_arr.size == 0:
            raise ConfigurationError("至少需要一个固定顶点。")
        if fixed_arr.min() < 0 or fixed_arr.max() >= n:
            raise ConfigurationError(f"固定顶点索引超出合法范围 [0, {n - 1}]。")
        if np.unique(fixed_arr).size != fixed_arr.size:
            raise ConfigurationError("固定顶点索引存在重复。")
        if int(max_iteration) < 0:
            raise ConfigurationError(f"max_iteration 不能为负: {max_iteration}")

        self.mesh:          MeshData = mesh
        self.max_iteration: int      = int(max_iteration)
        self.verbose:       bool     = verbose

        #: 固定顶点全局索引, 顺序与目标位置数组一致
        self.fixed: np.ndarray = fixed_arr
        free_mask = np.ones(n, dtype=bool)
        free_mask[fixed_arr] = False
        #: 自由顶点全局索引, 升序排列
        self.free: np.ndarray = np.flatnonzero(free_mask)

        self.vertex_info: List[VertexInfo] = [VertexInfo(VertexType.FREE, 0)] * n
        for pos, idx in enumerate(self.free):
            self.vertex_info[int(idx)] = VertexInfo(VertexType.FREE, pos)
        for pos, idx in enumerate(self.fixed):
            self.vertex_info[int(idx)] = VertexInfo(VertexType.FIXED, pos)

        # 向量化计算用的分类数组
        self._is_fixed: np.ndarray = ~free_mask
        self._position_index: np.ndarray = np.array(
            [info.pos for info in self.vertex_info], dtype=np.int64
        )

        self.state: SolverState = SolverState.UNINITIALIZED
        #: 当前请求的目标位置, shape (C, 3)
        self.fixed_vertices: Optional[np.ndarray] = None
        self._vertices_updated: Optional[np.ndarray] = None
        self.iteration_count: int = 0

    # -------------------------------------------------------------------------
    # 属性
    # -------------------------------------------------------------------------

    @property
    def num_free(self) -> int:
        return int(self.free.size)

    @property
    def num_fixed(self) -> int:
        return int(self.fixed.size)

    @property
    def vertices_updated(self) -> np.ndarray:
        """当前所有顶点位置的副本, shape (N, 3)。"""
        self._require_state(
            SolverState.PREPROCESSED, SolverState.ITERATING, action="vertices_updated"
        )
        return self._vertices_updated.copy()

    # -------------------------------------------------------------------------
    # 公共接口 (状态机)
    # -------------------------------------------------------------------------

    def precompute(self) -> None:
        """预计算 (权重、系统矩阵、分解), 每个求解器实例仅允许调用一次。"""
        self._require_state(SolverState.UNINITIALIZED, action="precompute()")
        self._precompute()
        self.state = SolverState.PRECOMPUTED

    def solve_preprocess(self, fixed_vertices: np.ndarray) -> None:
        """
        开始一个新的变形请求:校验目标位置并重置迭代状态。

        Parameters
        ----------
        fixed_vertices : array_like, shape (C, 3)
            固定顶点的目标位置, 按 fixed 的顺序排列。

        Raises
        ------
        ConfigurationError
            若尚未 precompute(), 或目标位置行数不等于固定顶点数。
        """
        self._require_state(
            SolverState.PRECOMPUTED,
            SolverState.PREPROCESSED,
            SolverState.ITERATING,
            action="solve_preprocess()",
        )
        targets = np.array(fixed_vertices, dtype=np.float64)
        if targets.ndim != 2 or targets.shape != (self.num_fixed, 3):
            raise ConfigurationError(
                f"目标位置应为 shape ({self.num_fixed}, 3), 实际 shape: {targets.shape}"
            )
        self.fixed_vertices = targets
        self.iteration_count = 0
        self._solve_preprocess(targets)
        self.state = SolverState.PREPROCESSED

    def solve_one_iteration(self) -> None:
        """推进一次迭代, 结果通过 vertices_updated / compute_energy() 查询。"""
        self._require_state(
            SolverState.PREPROCESSED, SolverState.ITERATING, action="solve_one_iteration()"
        )
        self._solve_one_iteration()
        self.iteration_count += 1
        self.state = SolverState.ITERATING

    def compute_energy(self) -> Energy:
        """纯查询:由当前状态计算能量分项报告。"""
        self._require_state(
            SolverState.PREPROCESSED, SolverState.ITERATING, action="compute_energy()"
        )
        return self._compute_energy()

    def solve(
        self,
        fixed_vertices:  np.ndarray,
        convergence_tol: float = 0.0,
        step_callback:   Optional[Callable[[int, np.ndarray], None]] = None,
    ) -> np.ndarray:
        """
        外层驱动循环:必要时 precompute(), 然后 solve_preprocess() 并迭代
        至多 max_iteration 次。

        Parameters
        ----------
        fixed_vertices : array_like, shape (C, 3)
            固定顶点目标位置。
        convergence_tol : float, optional
            若相邻两次迭代所有顶点位移的最大 L2 范数小于此值则提前退出。
            默认 0, 即始终执行 max_iteration 次。
        step_callback : Callable[[int, np.ndarray], None], optional
            每次迭代结束后的回调 f(iteration_index, vertices)。

        Returns
        -------
        vertices : np.ndarray, shape (N, 3)
            变形后的顶点坐标。
        """
        if self.state is SolverState.UNINITIALIZED:
            self.precompute()
        self.solve_preprocess(fixed_vertices)

        for iteration in range(self.max_iteration):
            p_prev = self._vertices_updated.copy()
            self.solve_one_iteration()

            if step_callback is not None:
                step_callback(iteration, self.vertices_updated)

            if convergence_tol > 0.0:
                max_disp = _compute_max_displacement(p_prev, self._vertices_updated)
                if self.verbose:
                    print(
                        f"{self.tag} 迭代 {iteration + 1:3d}/{self.max_iteration}"
                        f"  最大位移: {max_disp:.6e}"
                    )
                if max_disp < convergence_tol:
                    if self.verbose:
                        print(
                            f"{self.tag} 已收敛 (位移 {max_disp:.2e} "
                            f"< 阈值 {convergence_tol:.2e}) , 提前终止。"
                        )
                    break

        return self.vertices_updated

    # -------------------------------------------------------------------------
    # 子类钩子
    # -------------------------------------------------------------------------

    def _precompute(self) -> None:
        raise NotImplementedError

    def _solve_preprocess(self, fixed_vertices: np.ndarray) -> None:
        raise NotImplementedError

    def _solve_one_iteration(self) -> None:
        raise NotImplementedError

    def _compute_energy(self) -> Energy:
        raise NotImplementedError

    # -------------------------------------------------------------------------
    # 工具
    # -------------------------------------------------------------------------

    def _require_state(self, *allowed: SolverState, action: str) -> None:
        if self.state not in allowed:
            expected = " / ".join(s.value for s in allowed)
            raise ConfigurationError(
                f"{action} 调用顺序错误:当前状态为 {self.state.value}, 需要 {expected}。"
            )

    def _initial_positions(self, fixed_vertices: np.ndarray) -> np.ndarray:
        """以静止姿态为初值, 固定顶点直接赋为目标位置。"""
        p_prime = np.array(self.mesh.vertices, dtype=np.float64)
        p_prime[self.fixed] = fixed_vertices
        return p_prime


def _compute_max_displacement(p_old: np.ndarray, p_new: np.ndarray) -> float:
    """两次迭代间顶点位移 L2 范数的最大值, 用于收敛判定。"""
    if p_old.size == 0:
        return 0.0
    return float(np.max(np.linalg.norm(p_new - p_old, axis=1)))
