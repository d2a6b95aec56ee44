# dae_core/src/dae_core/sparsity.py
"""Jacobian sparsity patterns and column coloring.

A pattern stores, per Jacobian column, the rows that can be nonzero, in
compressed-column form:

    rows of column j = row_index[lead_index[j] : lead_index[j + 1]]

together with a coloring of the columns. Two columns may share a color only if
they have no row in common; all columns of one color can then be perturbed at
once and recovered from a single residual evaluation.

Patterns are normally supplied by the generated model. from_structure builds
one from a plain structure (dense boolean mask or SciPy sparse matrix) using a
greedy largest-first coloring of the column intersection graph.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import numpy as np
import numpy.typing as npt
from scipy.sparse import csc_matrix, issparse

if TYPE_CHECKING:
    from numpy.typing import ArrayLike


# =============================================================================
# Error message constants
# =============================================================================

_LEAD_INDEX_LEN_ERROR = "lead_index must have length n_cols + 1 = {expected}; got {actual}"
_LEAD_INDEX_MONOTONE_ERROR = "lead_index must start at 0 and be non-decreasing"
_LEAD_INDEX_END_ERROR = "lead_index[-1]={end} does not match len(row_index)={nnz}"
_ROW_RANGE_ERROR = "row_index entries must lie in [0, {n_rows})"
_COLOR_LEN_ERROR = "color_cols has length {actual}; expected {expected}"
_COLOR_RANGE_ERROR = "color_cols entries must lie in [0, {n_colors})"
_COLOR_CONFLICT_ERROR = "columns of color {color} share row(s) {rows}"
_EMPTY_COLOR_ERROR = "color(s) {colors} of {n_colors} have no columns"
_STRUCTURE_NDIM_ERROR = "structure must be 2D; got ndim={ndim}"

IndexArray = npt.NDArray[np.intp]

_EMPTY_INDEX: Final[IndexArray] = np.zeros(0, dtype=np.intp)


@dataclass(frozen=True, slots=True)
class SparsityPattern:
    """Colored sparsity pattern of one Jacobian.

    Attributes:
        n_colors: Number of colors.
        color_cols: Color (0-based) of each column, shape (n_cols,).
        lead_index: Column pointer array, shape (n_cols + 1,).
        row_index: Flat row indices of all structurally nonzero entries.
        n_rows: Number of Jacobian rows.
    """

    n_colors: int
    color_cols: IndexArray
    lead_index: IndexArray
    row_index: IndexArray
    n_rows: int

    @classmethod
    def from_arrays(
        cls,
        *,
        color_cols: ArrayLike,
        lead_index: ArrayLike,
        row_index: ArrayLike,
        n_rows: int | None = None,
        n_colors: int | None = None,
    ) -> SparsityPattern:
        """Build a pattern from raw arrays.

        Args:
            color_cols: Color of each column (0-based).
            lead_index: Column pointer array of length n_cols + 1.
            row_index: Flat row indices.
            n_rows: Number of rows (default: number of columns).
            n_colors: Number of colors (default: max(color_cols) + 1).

        Returns:
            SparsityPattern over copies of the given arrays.
        """
        colors = np.array(color_cols, dtype=np.intp).reshape(-1)
        lead = np.array(lead_index, dtype=np.intp).reshape(-1)
        rows = np.array(row_index, dtype=np.intp).reshape(-1)
        if n_colors is None:
            n_colors = int(colors.max()) + 1 if colors.size else 0
        if n_rows is None:
            n_rows = int(colors.size)
        return cls(
            n_colors=int(n_colors),
            color_cols=colors,
            lead_index=lead,
            row_index=rows,
            n_rows=int(n_rows),
        )

    @classmethod
    def from_structure(cls, structure: ArrayLike | csc_matrix) -> SparsityPattern:
        """Build a colored pattern from a Jacobian structure.

        Columns are colored greedily in largest-first order (by number of
        conflicting columns), each taking the smallest color not used by an
        already colored neighbor in the column intersection graph.

        Args:
            structure: Dense boolean-like array or SciPy sparse matrix of shape
                (n_rows, n_cols); nonzero entries mark structural nonzeros.

        Raises:
            ValueError: if structure is not 2D.

        Returns:
            Colored SparsityPattern.
        """
        if issparse(structure):
            mat = csc_matrix(structure, dtype=bool)
        else:
            dense = np.asarray(structure)
            if dense.ndim != 2:
                raise ValueError(_STRUCTURE_NDIM_ERROR.format(ndim=dense.ndim))
            mat = csc_matrix(dense != 0)
        mat.eliminate_zeros()
        mat.sort_indices()

        n_rows, n_cols = mat.shape
        colors = _greedy_column_coloring(mat)
        n_colors = int(colors.max()) + 1 if n_cols else 0

        return cls(
            n_colors=n_colors,
            color_cols=colors,
            lead_index=np.asarray(mat.indptr, dtype=np.intp),
            row_index=np.asarray(mat.indices, dtype=np.intp),
            n_rows=int(n_rows),
        )

    @classmethod
    def dense(cls, n: int) -> SparsityPattern:
        """Fully dense pattern of size n with one color per column."""
        return cls.from_arrays(
            color_cols=np.arange(n),
            lead_index=np.arange(0, n * n + 1, n) if n else [0],
            row_index=np.tile(np.arange(n), n),
            n_rows=n,
            n_colors=n,
        )

    @property
    def n_cols(self) -> int:
        """Number of Jacobian columns."""
        return int(self.color_cols.size)

    @property
    def nnz(self) -> int:
        """Number of structural nonzeros."""
        return int(self.row_index.size)

    def rows_of(self, col: int) -> IndexArray:
        """Rows that may be nonzero in column col."""
        return self.row_index[self.lead_index[col] : self.lead_index[col + 1]]

    def color_groups(self) -> list[IndexArray]:
        """Columns of each color, indexed by color."""
        return [
            np.flatnonzero(self.color_cols == color).astype(np.intp)
            for color in range(self.n_colors)
        ]

    def to_csc(self) -> csc_matrix:
        """Boolean structure as a CSC matrix of shape (n_rows, n_cols)."""
        return csc_matrix(
            (np.ones(self.nnz, dtype=bool), self.row_index, self.lead_index),
            shape=(self.n_rows, self.n_cols),
        )

    def validate(self) -> None:
        """Check internal consistency and the coloring property.

        Raises:
            ValueError: if the arrays are inconsistent, a color has no columns, or
                two columns of the same color share a row.
        """
        n_cols = self.n_cols
        if self.lead_index.size != n_cols + 1:
            raise ValueError(
                _LEAD_INDEX_LEN_ERROR.format(
                    expected=n_cols + 1,
                    actual=self.lead_index.size,
                )
            )
        if self.lead_index[0] != 0 or np.any(np.diff(self.lead_index) < 0):
            raise ValueError(_LEAD_INDEX_MONOTONE_ERROR)
        if int(self.lead_index[-1]) != self.nnz:
            raise ValueError(
                _LEAD_INDEX_END_ERROR.format(end=int(self.lead_index[-1]), nnz=self.nnz)
            )
        if self.nnz and (self.row_index.min() < 0 or self.row_index.max() >= self.n_rows):
            raise ValueError(_ROW_RANGE_ERROR.format(n_rows=self.n_rows))
        if n_cols and (self.color_cols.min() < 0 or self.color_cols.max() >= self.n_colors):
            raise ValueError(_COLOR_RANGE_ERROR.format(n_colors=self.n_colors))

        groups = self.color_groups()
        empty = [color for color, cols in enumerate(groups) if cols.size == 0]
        if empty:
            raise ValueError(_EMPTY_COLOR_ERROR.format(colors=empty, n_colors=self.n_colors))

        for color, cols in enumerate(groups):
            if cols.size < 2:
                continue
            rows = np.concatenate([self.rows_of(int(j)) for j in cols])
            uniq, counts = np.unique(rows, return_counts=True)
            if np.any(counts > 1):
                raise ValueError(
                    _COLOR_CONFLICT_ERROR.format(
                        color=color,
                        rows=uniq[counts > 1].tolist(),
                    )
                )


def _greedy_column_coloring(mat: csc_matrix) -> IndexArray:
    """Color columns so that columns sharing a row get different colors.

    Args:
        mat: Boolean CSC structure.

    Returns:
        Color of each column (0-based).
    """
    n_cols = int(mat.shape[1])
    if n_cols == 0:
        return _EMPTY_INDEX.copy()

    # Column intersection graph: (j, k) adjacent iff columns j and k share a row.
    struct = mat.astype(np.int64)
    pairs = (struct.T @ struct).tocoo()
    off_diag = pairs.row != pairs.col
    conflict = csc_matrix(
        (pairs.data[off_diag], (pairs.row[off_diag], pairs.col[off_diag])),
        shape=(n_cols, n_cols),
    )

    degree = np.diff(conflict.indptr)
    order = np.argsort(-degree, kind="stable")

    colors = np.full(n_cols, -1, dtype=np.intp)
    for col in order:
        neighbors = conflict.indices[conflict.indptr[col] : conflict.indptr[col + 1]]
        used = colors[neighbors]
        taken = np.zeros(neighbors.size + 1, dtype=bool)
        used = used[(used >= 0) & (used <= neighbors.size)]
        taken[used] = True
        colors[col] = int(np.argmin(taken))
    return colors


def as_dense_structure(pattern: SparsityPattern) -> npt.NDArray[np.bool_]:
    """Dense boolean structure of a pattern, shape (n_rows, n_cols)."""
    out: npt.NDArray[Any] = np.zeros((pattern.n_rows, pattern.n_cols), dtype=bool)
    for col in range(pattern.n_cols):
        out[pattern.rows_of(col), col] = True
    return out
