"""
HNF TOOLS
=========

Integer lattice arithmetic for supercells of a primitive cell.

Conventions (used throughout the code base):
- Lattice vectors are ROWS of a 3×3 matrix; fractional coordinates are row
  vectors, so cartesian = frac @ lattice.
- A supercell is the row span of an integer matrix T (rows are the
  superlattice vectors in units of the prim lattice vectors).
- Every superlattice has exactly one upper triangular Hermite Normal Form H
  with positive diagonal and 0 <= H[i, j] < H[j, j] for i < j.

The unit cells of a supercell (the quotient Z³ / HZ³) are represented by the
integer vectors (i, j, k) with 0 <= i < H[0,0], 0 <= j < H[1,1],
0 <= k < H[2,2].
"""

import numpy as np
from typing import List, Tuple


# =============================================================================
# HNF ENUMERATION
# =============================================================================

def enumerate_hnf(volume: int) -> List[np.ndarray]:
    """
    Enumerate all 3×3 Hermite Normal Form matrices with determinant `volume`.

    HNF is upper triangular with diagonal a, b, c where a*b*c = volume and
    off-diagonals 0 <= H[0,1] < b, 0 <= H[0,2] < c, 0 <= H[1,2] < c.

    Returns list of 3×3 int64 arrays, ordered by diagonal then off-diagonals.
    """
    if volume < 1:
        raise ValueError(f"Supercell volume must be positive, got {volume}")

    hnfs = []
    for a in range(1, volume + 1):
        if volume % a != 0:
            continue
        remaining = volume // a

        for b in range(1, remaining + 1):
            if remaining % b != 0:
                continue
            c = remaining // b

            for h01 in range(b):
                for h02 in range(c):
                    for h12 in range(c):
                        hnfs.append(np.array([
                            [a, h01, h02],
                            [0, b, h12],
                            [0, 0, c]
                        ], dtype=np.int64))

    return hnfs


def is_diagonal_hnf(H: np.ndarray) -> bool:
    """Check if HNF is diagonal (off-diagonal elements are zero)."""
    return H[0, 1] == 0 and H[0, 2] == 0 and H[1, 2] == 0


def enumerate_diagonal_hnf(volume: int) -> List[np.ndarray]:
    """Enumerate only diagonal HNF matrices with determinant `volume`."""
    return [H for H in enumerate_hnf(volume) if is_diagonal_hnf(H)]


def is_hnf(H: np.ndarray) -> bool:
    """
    Check if H is a valid (row-style, upper triangular) HNF matrix.

    Requirements:
    1. Upper triangular
    2. Positive diagonal
    3. Entries above the diagonal in [0, diagonal) of their column
    """
    H = np.asarray(H)
    if H.shape != (3, 3):
        return False
    if H[1, 0] != 0 or H[2, 0] != 0 or H[2, 1] != 0:
        return False
    if H[0, 0] <= 0 or H[1, 1] <= 0 or H[2, 2] <= 0:
        return False
    if not (0 <= H[0, 1] < H[1, 1]):
        return False
    if not (0 <= H[0, 2] < H[2, 2]):
        return False
    if not (0 <= H[1, 2] < H[2, 2]):
        return False
    return True


def hnf_determinant(H: np.ndarray) -> int:
    """Determinant of an HNF matrix (product of the diagonal)."""
    if not is_hnf(H):
        raise ValueError(f"Matrix is not HNF: {H.tolist()}")
    return int(H[0, 0]) * int(H[1, 1]) * int(H[2, 2])


def hnf_key(H: np.ndarray) -> Tuple[int, int, int, int, int, int]:
    """Hashable, totally ordered key of an HNF: diagonal, then H12, H02, H01."""
    return (int(H[0, 0]), int(H[1, 1]), int(H[2, 2]),
            int(H[1, 2]), int(H[0, 2]), int(H[0, 1]))


def hnf_from_key(key: Tuple[int, ...]) -> np.ndarray:
    """Inverse of hnf_key."""
    a, b, c, h12, h02, h01 = key
    return np.array([[a, h01, h02], [0, b, h12], [0, 0, c]], dtype=np.int64)


def supercell_name(H: np.ndarray) -> str:
    """Database name of the supercell with HNF H, e.g. 'SCEL4_2_2_1_0_0_0'."""
    volume = int(H[0, 0]) * int(H[1, 1]) * int(H[2, 2])
    return "SCEL{}_{}_{}_{}_{}_{}_{}".format(volume, *hnf_key(H))


# =============================================================================
# INTEGER ROW REDUCTION
# =============================================================================

def extended_gcd(a: int, b: int) -> Tuple[int, int, int]:
    """
    Extended Euclidean algorithm.
    Returns (g, x, y) such that a*x + b*y = g = gcd(a, b) >= 0.
    """
    if b == 0:
        if a < 0:
            return (-a, -1, 0)
        return (a, 1, 0)
    g, x, y = extended_gcd(b, a % b)
    return (g, y, x - (a // b) * y)


def hermite_normal_form(T: np.ndarray) -> np.ndarray:
    """
    HNF of the lattice spanned by the rows of T.

    T may have more than three rows (e.g. superlattice vectors plus extra
    translations); the rows must span a full-rank 3D lattice.

    Only unimodular row operations are used, so the row span is unchanged.
    """
    A = np.array(T, dtype=np.int64).reshape(-1, 3)
    n_rows = A.shape[0]
    if n_rows < 3:
        raise ValueError(f"Need at least 3 generating vectors, got {n_rows}")

    for col in range(3):
        # Fold every row below into the pivot row with gcd combinations
        for r in range(col + 1, n_rows):
            b = int(A[r, col])
            if b == 0:
                continue
            a = int(A[col, col])
            g, x, y = extended_gcd(a, b)
            pivot_row = x * A[col] + y * A[r]
            other_row = (a // g) * A[r] - (b // g) * A[col]
            A[col] = pivot_row
            A[r] = other_row

        if A[col, col] == 0:
            raise ValueError(f"Generating vectors are not full rank:\n{np.asarray(T)}")
        if A[col, col] < 0:
            A[col] = -A[col]

        for r in range(col):
            q = int(A[r, col]) // int(A[col, col])
            if q:
                A[r] = A[r] - q * A[col]

    return A[:3].copy()


def integer_matrix_inverse(M: np.ndarray) -> np.ndarray:
    """
    Exact inverse of a unimodular 3×3 integer matrix (det = ±1).

    Uses the adjugate: M^{-1} = adj(M) / det(M) = det(M) * adj(M).

    Raises:
        ValueError: if matrix is not unimodular
    """
    M = np.asarray(M, dtype=np.int64)

    det = (M[0,0] * (M[1,1]*M[2,2] - M[1,2]*M[2,1])
         - M[0,1] * (M[1,0]*M[2,2] - M[1,2]*M[2,0])
         + M[0,2] * (M[1,0]*M[2,1] - M[1,1]*M[2,0]))

    if abs(det) != 1:
        raise ValueError(f"Matrix is not unimodular: det = {det}")

    adj = np.empty((3, 3), dtype=np.int64)
    for i in range(3):
        for j in range(3):
            minor = np.delete(np.delete(M, j, axis=0), i, axis=1)
            cof = minor[0, 0] * minor[1, 1] - minor[0, 1] * minor[1, 0]
            adj[i, j] = cof if (i + j) % 2 == 0 else -cof

    return adj * int(det)


# =============================================================================
# QUOTIENT Z³ / HZ³
# =============================================================================

def reduce_translation(u, H: np.ndarray) -> np.ndarray:
    """
    Reduce integer vector(s) into the unit-cell representatives of Z³ / HZ³.

    Accepts a single vector or an (n, 3) array. Rows of H are subtracted in
    order (row 0 also shifts components 1 and 2, row 1 shifts component 2),
    leaving 0 <= v[i] < H[i, i].
    """
    v = np.array(u, dtype=np.int64)
    single = v.ndim == 1
    V = np.atleast_2d(v).copy()
    for i in range(3):
        q = np.floor_divide(V[:, i], H[i, i])
        V -= q[:, None] * H[i]
    return V[0] if single else V


def unit_cell_index(v, H: np.ndarray):
    """Linear index of already reduced unit-cell vector(s)."""
    v = np.asarray(v, dtype=np.int64)
    idx = (v[..., 0] * int(H[1, 1]) + v[..., 1]) * int(H[2, 2]) + v[..., 2]
    if idx.ndim == 0:
        return int(idx)
    return idx


def enumerate_unit_cells(H: np.ndarray) -> np.ndarray:
    """All unit-cell representatives, ordered consistently with unit_cell_index."""
    a, b, c = int(H[0, 0]), int(H[1, 1]), int(H[2, 2])
    cells = [(i, j, k) for i in range(a) for j in range(b) for k in range(c)]
    return np.array(cells, dtype=np.int64).reshape(-1, 3)
