import numpy as np
import pytest

from sesync.cli import _build_parser, main
from sesync.measurements import generate_pose_graph
from sesync.staircase import SESyncOpts


def write_g2o(path, measurements):
    lines = []
    for m in measurements:
        dtheta = np.arctan2(m.R[1, 0], m.R[0, 0])
        fields = [m.t[0], m.t[1], dtheta, 1.0, 0.0, 0.0, 1.0, 0.0, 1.0]
        lines.append(f"EDGE_SE2 {m.i} {m.j} " + " ".join(f"{v:.17g}" for v in fields))
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return str(path)


@pytest.fixture
def cycle_file(tmp_path):
    measurements, _ = generate_pose_graph(4, d=2, seed=0)
    return write_g2o(tmp_path / "cycle.g2o", measurements)


def test_info_reports_graph_size(cycle_file, capsys):
    assert main(["info", cycle_file]) == 0
    out = capsys.readouterr().out
    assert "poses: 4" in out
    assert "dimension: 2" in out
    assert "measurements: 4" in out


def test_run_solves_and_saves_estimate(cycle_file, tmp_path, capsys):
    output = tmp_path / "estimate.npz"
    assert main(["run", cycle_file, "--output", str(output)]) == 0
    out = capsys.readouterr().out
    assert "GlobalOpt" in out
    assert "saved:" in out
    with np.load(output) as data:
        assert str(data["status"]) == "GlobalOpt"
        assert data["xhat"].shape == (2, 12)
        assert list(data["ranks"]) == [SESyncOpts().r0]
        assert float(data["Fxhat"]) < 1e-8


def test_run_rejects_initial_rank_below_dimension_plus_one(cycle_file):
    with pytest.raises(ValueError):
        main(["run", cycle_file, "--r0", "2"])


def test_run_rejects_non_positive_rank(cycle_file):
    with pytest.raises(SystemExit):
        main(["run", cycle_file, "--r0", "0"])


def test_run_defaults_match_solver_options():
    args = _build_parser().parse_args(["run", "graph.g2o"])
    opts = SESyncOpts()
    assert args.r0 == opts.r0
    assert args.rmax is None
    assert args.formulation == opts.formulation
    assert args.initialization == opts.initialization
    assert args.preconditioner == opts.preconditioner
    assert args.max_time == opts.max_computation_time
    assert args.num_threads == opts.num_threads


def test_run_raises_rmax_to_initial_rank(cycle_file, tmp_path):
    output = tmp_path / "estimate.npz"
    assert main(["run", cycle_file, "--r0", "12", "--output", str(output)]) == 0
    with np.load(output) as data:
        assert list(data["ranks"]) == [12]
