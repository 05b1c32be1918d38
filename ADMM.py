"""
基于 ADMM (Alternating Direction Method of Multipliers) 的 ARAP 网格变形求解器。

问题描述
--------
给定静止姿态网格 P̄ 与一组固定 (把手) 顶点的目标位置, 求解自由顶点位置 P
以及逐顶点辅助矩阵 R_v, 使增广能量最小:

    E(P, R) = Σ_{(i,j)} w_ij ‖(p_i - p_j) - R_i(p̄_i - p̄_j)‖²
              + Σ_v (ρ/2) ‖R_v - (S_v - T_v)‖²

    其中:
        (i, j) 遍历每个面片的三条有向边 (内部边因此被计入两次)
        R_v        无约束的旋转变量 (3x3)
        S_v ∈ SO(3) R_v + T_v 在旋转群上的最近投影
        T_v        缩放对偶变量, 累积 R_v 与 S_v 的差异

迭代 (每次 solve_one_iteration)
------------------------------
    1. 线性步:S, T 固定, 求解稀疏对称正定方程组得到 P_free 与 R
    2. 投影步:S_v = argmin_{S∈SO(3)} ‖S - (R_v + T_v)‖²  (SVD 闭合解)
    3. 对偶步:T_v += R_v - S_v

线性系统排布
------------
未知量 x 的列数为 free_num + 3·vertex_num:
    列 [0, free_num)                           自由顶点位置
    列 free_num + 3v + k (k = 0, 1, 2)        R_v 的第 k 列
三个坐标轴互相独立, 作为右端项的三列一次求解; 解中顶点 v 的 3x3 块为 R_vᵀ。

系统矩阵只依赖拓扑、余切权重与 ρ, 在 precompute() 中组装并分解一次,
之后所有迭代与所有目标位置请求共享同一分解因子。
"""

from __future__ import annotations

import copy
import logging
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from ARAP import (
    DEFAULT_MAX_ITERATION,
    ENERGY_ELASTIC,
    ENERGY_ROTATION_PENALTY,
    ENERGY_TOTAL,
    MATRIX_DIFF_THRESHOLD,
    CholeskyFactor,
    ConfigurationError,
    Energy,
    MeshData,
    NumericalInvariantError,
    Solver,
    SolverState,
    VertexType,
    closest_rotations,
    compute_cotangent_weights,
    edge_weight,
    so3_violations,
)

_LOGGER = logging.getLogger(__name__)


# =============================================================================
# 常量
# =============================================================================

DEFAULT_RHO: float = 1.0

#: 投影步前后能量允许的上升量 (自检)
ENERGY_TOLERANCE: float = 0.02

#: 线性步自检的扰动步长
PERTURBATION_DELTA: float = 1e-3

#: 线性步自检中能量下降的相对容差
LINEAR_CHECK_TOLERANCE: float = 1e-9

#: 自检失败时输出的能量曲线采样范围 (以扰动步长为单位)
CURVE_STEPS: range = range(-10, 11)


# =============================================================================
# 自检报告
# =============================================================================

class LinearSolveCheck(NamedTuple):
    """
    线性步一阶最优性自检结果。

    location 为 ("position", vertex, axis) 或 ("rotation", vertex, row, col),
    energy_curve 为失败变量附近的 (取值, 能量) 采样, 通过时为空。
    """
    passed: bool
    location: Optional[Tuple]
    optimal_energy: float
    energy_curve: List[Tuple[float, float]]


class RotationStepCheck(NamedTuple):
    """投影步能量自检结果:投影后能量不应上升超过 ENERGY_TOLERANCE。"""
    passed: bool
    energy_before: float
    energy_after: float


# =============================================================================
# ADMM 求解器 (核心算法)
# =============================================================================

class AdmmFixedSolver(Solver):
    """
    固定把手顶点的 ADMM-ARAP 求解器。

    Parameters
    ----------
    mesh : MeshData
        静止姿态网格 (拓扑在 precompute 后不再改变) 。
    fixed : Sequence[int]
        固定顶点索引, 顺序即 solve_preprocess() 目标位置的行顺序。
    max_iteration : int, optional
        Solver.solve() 外层循环的迭代次数, 默认 20。
    rho : float, optional
        ADMM 罚参数 ρ (> 0) , 默认 1.0。
    cholesky_factor : CholeskyFactor, optional
        线性求解器实例, 默认新建。
    clamp_negative_weights : bool, optional
        是否将钝角三角形产生的负余切权重截断为 0, 默认 True。
        负权重会使 R_first 块 2w·v vᵀ 压过 ρI, 系统矩阵不再正定;
        截断后的权重同时用于系统矩阵、右端项与能量计算。
    verify : bool, optional
        是否在每次迭代中运行线性步与投影步自检 (开销较大, 仅用于调试) 。
        结果保存在 last_linear_solve_check / last_rotation_step_check,
        失败时记录 warning 日志, 不会中断迭代。
    verbose : bool, optional
        是否打印进度日志, 默认 False。

    Raises
    ------
    ConfigurationError
        若 rho 不是正的有限数, 或 fixed 非法 (见 Solver) ;
        precompute() 时若存在退化面片, 或自由顶点没有任何正权重的边。
    """

    tag = "[ADMM]"

    def __init__(
        self,
        mesh:                   MeshData,
        fixed:                  Sequence[int],
        max_iteration:          int                      = DEFAULT_MAX_ITERATION,
        rho:                    float                    = DEFAULT_RHO,
        cholesky_factor:        Optional[CholeskyFactor] = None,
        clamp_negative_weights: bool                     = True,
        verify:                 bool                     = False,
        verbose:                bool                     = False,
    ) -> None:
        super().__init__(mesh, fixed, max_iteration, verbose)
        if not (np.isfinite(rho) and rho > 0.0):
            raise ConfigurationError(f"罚参数 rho 须为正数, 实际: {rho}")

        self.rho:             float          = float(rho)
        self.cholesky_factor: CholeskyFactor = (
            cholesky_factor if cholesky_factor is not None else CholeskyFactor()
        )
        self.clamp_negative_weights: bool = clamp_negative_weights
        self.verify:                 bool = verify

        # ---- 预计算缓存 (precompute() 后只读) -------------------------------

        #: 余切权重表, 见 ARAP.compute_cotangent_weights
        self._weights = None
        #: 有向边出现 (first → second), 每个面片三条
        self._first:       Optional[np.ndarray] = None
        self._second:      Optional[np.ndarray] = None
        self._edge_weight: Optional[np.ndarray] = None
        #: 静止姿态边向量 p̄_first - p̄_second, shape (E, 3)
        self._rest_edges:  Optional[np.ndarray] = None
        self._system_matrix: Optional[sp.csc_matrix] = None

        # ---- 单次请求状态 (solve_preprocess() 重置) -------------------------

        self._rotations:         Optional[np.ndarray] = None
        self._closest_rotations: Optional[np.ndarray] = None
        self._duals:             Optional[np.ndarray] = None

        self.last_linear_solve_check:  Optional[LinearSolveCheck]  = None
        self.last_rotation_step_check: Optional[RotationStepCheck] = None

    # =========================================================================
    # 状态访问
    # =========================================================================

    @property
    def system_matrix(self) -> sp.csc_matrix:
        self._require_state(
            SolverState.PRECOMPUTED, SolverState.PREPROCESSED, SolverState.ITERATING,
            action="system_matrix",
        )
        return self._system_matrix

    @property
    def rotations(self) -> np.ndarray:
        """旋转变量 R, shape (N, 3, 3)。"""
        self._require_state(SolverState.PREPROCESSED, SolverState.ITERATING, action="rotations")
        return self._rotations.copy()

    @property
    def closest_rotations(self) -> np.ndarray:
        """R + T 在 SO(3) 上的投影 S, shape (N, 3, 3)。"""
        self._require_state(
            SolverState.PREPROCESSED, SolverState.ITERATING, action="closest_rotations"
        )
        return self._closest_rotations.copy()

    @property
    def duals(self) -> np.ndarray:
        """缩放对偶变量 T, shape (N, 3, 3)。"""
        self._require_state(SolverState.PREPROCESSED, SolverState.ITERATING, action="duals")
        return self._duals.copy()

    def spawn(self) -> "AdmmFixedSolver":
        """
        创建共享同一份预计算结果 (权重、系统矩阵、分解因子) 的新求解器实例。

        新实例处于 PRECOMPUTED 状态, 拥有独立的单次请求状态, 可并行处理
        同一拓扑上的另一个变形请求。共享部分只读, 无需加锁。
        """
        self._require_state(
            SolverState.PRECOMPUTED, SolverState.PREPROCESSED, SolverState.ITERATING,
            action="spawn()",
        )
        clone = copy.copy(self)
        clone.state = SolverState.PRECOMPUTED
        clone.fixed_vertices = None
        clone.iteration_count = 0
        clone._vertices_updated = None
        clone._rotations = None
        clone._closest_rotations = None
        clone._duals = None
        clone.last_linear_solve_check = None
        clone.last_rotation_step_check = None
        return clone

    # =========================================================================
    # 预计算:权重、系统矩阵、分解
    # =========================================================================

    def _matrix_variable_pos(self, vertex: int, column: int) -> int:
        """R_vertex 第 column 列在未知量中的位置。"""
        return self.num_free + 3 * vertex + column

    def _build_edge_occurrences(self) -> None:
        """展开每个面片的三条有向边 (1→2, 2→0, 0→1) 及其权重与静止边向量。"""
        faces = self.mesh.faces
        self._first  = faces[:, [1, 2, 0]].reshape(-1)
        self._second = faces[:, [2, 0, 1]].reshape(-1)
        self._edge_weight = np.array(
            [edge_weight(self._weights, i, j) for i, j in zip(self._first, self._second)],
            dtype=np.float64,
        )
        if self.clamp_negative_weights:
            np.maximum(self._edge_weight, 0.0, out=self._edge_weight)
        rest = self.mesh.vertices
        self._rest_edges = rest[self._first] - rest[self._second]

    def _check_free_vertices_connected(self) -> None:
        """
        每个自由顶点至少要有一条正权重的有向边, 否则其位置行全为零,
        系统矩阵奇异。不属于任何面片的顶点同样在此被拒绝。
        """
        n: int = self.mesh.num_vertices
        incident = np.bincount(self._first, weights=self._edge_weight, minlength=n)
        incident += np.bincount(self._second, weights=self._edge_weight, minlength=n)
        isolated = self.free[incident[self.free] <= 0.0]
        if isolated.size:
            raise ConfigurationError(
                f"自由顶点 {isolated[:10].tolist()} 不与任何正权重的边相连, 位置无法确定。"
            )

    def _build_system_matrix(self) -> sp.csc_matrix:
        """
        直接累加梯度组装系统矩阵 M。

        对每条有向边 (first, second), v = p̄_first - p̄_second, w 为边权重,
        能量项 w‖(p_f - p_s) - R_f v‖² 对未知量求导:

            自由 first :  M[f, f] += 2w,  M[f, s] -= 2w,  M[f, R_f(k)] -= 2w·v_k
            自由 second:  M[s, s] += 2w,  M[s, f] -= 2w,  M[s, R_f(k)] += 2w·v_k
            R_first 块 :  += 2w·v vᵀ, 以及与上述对称的交叉项

        罚项 (ρ/2)‖R_v - (S_v - T_v)‖² 为每个旋转变量对角元贡献 ρ。
        固定顶点只出现在右端项中。

        Returns
        -------
        M : sp.csc_matrix, shape (free_num + 3N, free_num + 3N)
            对称正定系统矩阵。
        """
        n_free: int = self.num_free
        size:   int = n_free + 3 * self.mesh.num_vertices

        rows: List[int]   = []
        cols: List[int]   = []
        vals: List[float] = []

        rot_diag = range(n_free, size)
        rows.extend(rot_diag)
        cols.extend(rot_diag)
        vals.extend([self.rho] * len(rot_diag))

        for first, second, w, v in zip(
            self._first, self._second, self._edge_weight, self._rest_edges
        ):
            first_info  = self.vertex_info[int(first)]
            second_info = self.vertex_info[int(second)]
            first_free  = first_info.type is VertexType.FREE
            second_free = second_info.type is VertexType.FREE
            rot = [self._matrix_variable_pos(int(first), k) for k in range(3)]
            two_w = 2.0 * w

            if first_free:
                f = first_info.pos
                rows.append(f)
                cols.append(f)
                vals.append(two_w)
                if second_free:
                    rows.append(f)
                    cols.append(second_info.pos)
                    vals.append(-two_w)
                for k in range(3):
                    rows += [f, rot[k]]
                    cols += [rot[k], f]
                    vals += [-two_w * v[k], -two_w * v[k]]

            if second_free:
                s = second_info.pos
                rows.append(s)
                cols.append(s)
                vals.append(two_w)
                if first_free:
                    rows.append(s)
                    cols.append(first_info.pos)
                    vals.append(-two_w)
                for k in range(3):
                    rows += [s, rot[k]]
                    cols += [rot[k], s]
                    vals += [two_w * v[k], two_w * v[k]]

            block = two_w * np.outer(v, v)
            for i in range(3):
                for j in range(3):
                    rows.append(rot[i])
                    cols.append(rot[j])
                    vals.append(block[i, j])

        # 重复坐标在转换时累加
        M = sp.coo_matrix((vals, (rows, cols)), shape=(size, size), dtype=np.float64).tocsc()
        M.eliminate_zeros()
        return M

    def _precompute(self) -> None:
        n: int = self.mesh.num_vertices
        if self.verbose:
            print(
                f"{self.tag} 网格:{n} 顶点, {self.mesh.num_faces} 面片, "
                f"{self.num_fixed} 个固定顶点, {self.num_free} 个自由顶点, ρ={self.rho:.4g}"
            )
            print(f"{self.tag} 计算余切权重...")
        self._weights = compute_cotangent_weights(self.mesh)
        self._build_edge_occurrences()
        self._check_free_vertices_connected()

        if self.verbose:
            print(f"{self.tag} 组装系统矩阵...")
        M = self._build_system_matrix()

        if self.verbose:
            print(
                f"{self.tag} Cholesky 分解 (后端: {self.cholesky_factor.backend}, "
                f"阶数 {M.shape[0]}, 非零元 {M.nnz}) ..."
            )
        self.cholesky_factor.factorization(M)
        self._system_matrix = M

    # =========================================================================
    # 单次请求初始化
    # =========================================================================

    def _solve_preprocess(self, fixed_vertices: np.ndarray) -> None:
        n: int = self.mesh.num_vertices
        self._vertices_updated  = self._initial_positions(fixed_vertices)
        self._rotations         = np.tile(np.eye(3), (n, 1, 1))
        self._closest_rotations = np.tile(np.eye(3), (n, 1, 1))
        self._duals             = np.zeros((n, 3, 3), dtype=np.float64)
        self.last_linear_solve_check  = None
        self.last_rotation_step_check = None

    # =========================================================================
    # 迭代
    # =========================================================================

    def _build_rhs(self) -> np.ndarray:
        """
        构建线性步右端项, shape (free_num + 3N, 3)。

        旋转行:ρ·(S_v - T_v)ᵀ
        位置行:自由端点从固定邻点得到 2w·q_fixed
        R_first 行:2w·v·bᵀ, b = q_first [first 固定] - q_second [second 固定]
        """
        n_free: int = self.num_free
        n:      int = self.mesh.num_vertices
        p = self._vertices_updated

        rhs = np.zeros((n_free + 3 * n, 3), dtype=np.float64)
        rot_rhs = rhs[n_free:].reshape(n, 3, 3)
        rot_rhs += self.rho * np.transpose(self._closest_rotations - self._duals, (0, 2, 1))

        first, second = self._first, self._second
        two_w = 2.0 * self._edge_weight
        first_fixed  = self._is_fixed[first]
        second_fixed = self._is_fixed[second]

        mask = ~first_fixed & second_fixed
        np.add.at(
            rhs,
            self._position_index[first[mask]],
            two_w[mask, None] * p[second[mask]],
        )
        mask = first_fixed & ~second_fixed
        np.add.at(
            rhs,
            self._position_index[second[mask]],
            two_w[mask, None] * p[first[mask]],
        )

        b = np.zeros((first.size, 3), dtype=np.float64)
        b[first_fixed]  += p[first[first_fixed]]
        b[second_fixed] -= p[second[second_fixed]]
        np.add.at(
            rot_rhs,
            first,
            two_w[:, None, None] * self._rest_edges[:, :, None] * b[:, None, :],
        )
        return rhs

    def _linear_solve(self) -> None:
        n_free: int = self.num_free
        n:      int = self.mesh.num_vertices

        rhs = self._build_rhs()
        solution = np.asarray(self.cholesky_factor.solve(rhs))
        if solution.shape != rhs.shape:
            raise NumericalInvariantError(
                f"线性求解结果维度不匹配: {solution.shape} != {rhs.shape}"
            )

        residual = float(np.sum((self._system_matrix @ solution - rhs) ** 2))
        if residual > MATRIX_DIFF_THRESHOLD:
            raise NumericalInvariantError(
                f"稀疏线性求解残差过大: ‖Mx - b‖² = {residual:.3e}"
            )

        self._vertices_updated[self.free] = solution[:n_free]
        self._rotations = np.transpose(solution[n_free:].reshape(n, 3, 3), (0, 2, 1)).copy()

    def _solve_one_iteration(self) -> None:
        # 步骤 1:线性步
        self._linear_solve()
        if self.verify:
            check = self.check_linear_solve()
            self.last_linear_solve_check = check
            if not check.passed:
                _LOGGER.warning(
                    "线性步自检失败: 位置 %s, 最优能量 %.9e, 能量曲线 %s",
                    check.location, check.optimal_energy, check.energy_curve,
                )

        # 步骤 2:投影步
        energy_before = self.compute_rotation_step_energy() if self.verify else None
        self._closest_rotations = closest_rotations(self._rotations + self._duals)
        bad = so3_violations(self._closest_rotations)
        if bad.size:
            raise NumericalInvariantError(
                f"投影结果不属于 SO(3), 顶点: {bad[:10].tolist()}"
            )
        if self.verify:
            energy_after = self.compute_rotation_step_energy()
            check = RotationStepCheck(
                passed=energy_after <= energy_before + ENERGY_TOLERANCE,
                energy_before=energy_before,
                energy_after=energy_after,
            )
            self.last_rotation_step_check = check
            if not check.passed:
                _LOGGER.warning(
                    "投影步自检失败: 投影前能量 %.9e, 投影后能量 %.9e",
                    energy_before, energy_after,
                )

        # 步骤 3:对偶步
        self._duals = self._duals + self._rotations - self._closest_rotations

        if self.verbose:
            primal = float(np.sum((self._rotations - self._closest_rotations) ** 2))
            print(f"{self.tag} 迭代 {self.iteration_count + 1:3d}  ‖R - S‖²: {primal:.6e}")

    # =========================================================================
    # 能量
    # =========================================================================

    def _elastic_energy(self, vertices: np.ndarray, rotations: np.ndarray) -> float:
        """Σ w ‖(p_first - p_second) - R_first·v‖², 对所有有向边出现求和。"""
        diff = (vertices[self._first] - vertices[self._second]) - np.einsum(
            "eij,ej->ei", rotations[self._first], self._rest_edges
        )
        return float(np.sum(self._edge_weight * np.sum(diff * diff, axis=1)))

    def _compute_energy(self) -> Energy:
        energy = Energy()

        bad = so3_violations(self._closest_rotations)
        if bad.size:
            _LOGGER.error("S 不属于 SO(3), 顶点: %s", bad[:10].tolist())
            energy.add_energy_type(ENERGY_TOTAL, np.inf)
            return energy

        elastic = self._elastic_energy(self._vertices_updated, self._rotations)
        penalty = 0.5 * self.rho * float(
            np.sum((self._rotations - self._closest_rotations) ** 2)
        )
        energy.add_energy_type(ENERGY_ELASTIC, elastic)
        energy.add_energy_type(ENERGY_ROTATION_PENALTY, penalty)
        energy.add_energy_type(ENERGY_TOTAL, elastic + penalty)
        return energy

    def compute_linear_solve_energy(
        self,
        vertices:  np.ndarray,
        rotations: np.ndarray,
    ) -> float:
        """
        线性步实际最小化的二次能量 (以当前 S, T 为常量) 。

            Σ w ‖(p_first - p_second) - R_first·v‖² + (ρ/2) Σ_v ‖R_v - S_v + T_v‖²
        """
        self._require_state(
            SolverState.PREPROCESSED, SolverState.ITERATING,
            action="compute_linear_solve_energy()",
        )
        augmented = rotations - self._closest_rotations + self._duals
        return self._elastic_energy(vertices, rotations) + 0.5 * self.rho * float(
            np.sum(augmented * augmented)
        )

    def compute_rotation_step_energy(self) -> float:
        """投影步能量 (ρ/2) Σ_v ‖R_v - S_v + T_v‖²; S 不属于 SO(3) 时为 +inf。"""
        self._require_state(
            SolverState.PREPROCESSED, SolverState.ITERATING,
            action="compute_rotation_step_energy()",
        )
        if so3_violations(self._closest_rotations).size:
            return np.inf
        augmented = self._rotations - self._closest_rotations + self._duals
        return 0.5 * self.rho * float(np.sum(augmented * augmented))

    # =========================================================================
    # 自检:线性步一阶最优性
    # =========================================================================

    def check_linear_solve(self, delta: float = PERTURBATION_DELTA) -> LinearSolveCheck:
        """
        扰动检查当前 (P, R) 是否为线性步二次能量的极小点。

        对每个自由顶点坐标与每个旋转变量元素分别做 ±delta 扰动,
        任一方向能量下降 (超过相对容差) 即判定失败。
        须在线性步之后、投影步之前调用, 此时 S, T 仍为线性步所用的值。

        Parameters
        ----------
        delta : float, optional
            扰动步长, 默认 1e-3。

        Returns
        -------
        check : LinearSolveCheck
            passed 为 False 时 location 指出失败变量, energy_curve 为其附近能量采样。
        """
        vertices  = self._vertices_updated.copy()
        rotations = self._rotations.copy()
        optimal   = self.compute_linear_solve_energy(vertices, rotations)
        tolerance = LINEAR_CHECK_TOLERANCE * max(1.0, abs(optimal))

        candidates: List[Tuple[np.ndarray, Tuple[int, ...], Tuple]] = []
        for vtx in self.free:
            for axis in range(3):
                candidates.append((vertices, (int(vtx), axis), ("position", int(vtx), axis)))
        for vtx in range(self.mesh.num_vertices):
            for i in range(3):
                for j in range(3):
                    candidates.append((rotations, (vtx, i, j), ("rotation", vtx, i, j)))

        for array, index, location in candidates:
            original = array[index]
            energies = []
            for sign in (1.0, -1.0):
                array[index] = original + sign * delta
                energies.append(self.compute_linear_solve_energy(vertices, rotations))
            array[index] = original

            if min(energies) < optimal - tolerance:
                curve = []
                for step in CURVE_STEPS:
                    array[index] = original + step * delta
                    curve.append(
                        (float(array[index]), self.compute_linear_solve_energy(vertices, rotations))
                    )
                array[index] = original
                return LinearSolveCheck(False, location, optimal, curve)

        return LinearSolveCheck(True, None, optimal, [])


# =============================================================================
# 便利工厂函数
# =============================================================================

def create_admm_solver(
    mesh:          MeshData,
    fixed:         Sequence[int],
    max_iteration: int   = DEFAULT_MAX_ITERATION,
    rho:           float = DEFAULT_RHO,
    verify:        bool  = False,
    verbose:       bool  = False,
) -> AdmmFixedSolver:
    """
    快速创建带默认 CholeskyFactor 的 AdmmFixedSolver 实例。

    Examples
    --------
    >>> mesh   = MeshData(vertices, faces)
    >>> solver = create_admm_solver(mesh, fixed=[0, 2], rho=1.0)
    >>> solver.precompute()
    >>> solver.solve_preprocess([[0.0, 0.0, 0.0], [1.1, 1.0, 0.0]])
    >>> for _ in range(20):
    ...     solver.solve_one_iteration()
    >>> solver.compute_energy()[ENERGY_ELASTIC]
    """
    return AdmmFixedSolver(
        mesh            = mesh,
        fixed           = fixed,
        max_iteration   = max_iteration,
        rho             = rho,
        cholesky_factor = CholeskyFactor(),
        verify          = verify,
        verbose         = verbose,
    )
