"""Certifiably correct synchronization over the special Euclidean group.

The top-level API exposes the Riemannian Staircase entry point, its options
and result types, the problem handle, and the measurement helpers. The inner
solvers (``sesync.tnt``, ``sesync.tcg``, ``sesync.certify``) are importable
from their submodules.
"""

from .certify import CertificateStatus, CertificationResult, IncompleteLDLPreconditioner, certify
from .escape import escape_saddle
from .measurements import (
    RelativePoseMeasurement,
    build_data_matrices,
    generate_pose_graph,
    read_g2o,
)
from .problem import SESyncProblem
from .staircase import SESyncOpts, SESyncResult, SESyncStatus, sesync
from .tnt import RiemannianTNT, TNTParams, TNTResult, TNTSnapshot, TNTStatus

__all__ = [
    "sesync",
    "SESyncOpts",
    "SESyncResult",
    "SESyncStatus",
    "SESyncProblem",
    "RelativePoseMeasurement",
    "build_data_matrices",
    "generate_pose_graph",
    "read_g2o",
    "escape_saddle",
    "certify",
    "CertificateStatus",
    "CertificationResult",
    "IncompleteLDLPreconditioner",
    "RiemannianTNT",
    "TNTParams",
    "TNTResult",
    "TNTSnapshot",
    "TNTStatus",
]
