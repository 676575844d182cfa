"""ODE solver wrappers around Diffrax for jaxthermo.

Provides consistent interfaces for non-stiff (background) and stiff
(recombination) ODE integration, with configurable adjoint methods
for reverse-mode AD, and a check that turns a failed solve into an error.

References:
    Diffrax docs: https://docs.kidger.site/diffrax/
"""

import diffrax
import numpy as np
from jaxtyping import Array, Float

from jaxthermo.errors import NumericalDivergence


def solve_nonstiff(
    rhs_fn,
    t0: float,
    t1: float,
    y0: Float[Array, "D"],
    saveat: diffrax.SaveAt,
    args=None,
    rtol: float = 1e-10,
    atol: float = 1e-13,
    max_steps: int = 16384,
    adjoint: str = "recursive_checkpoint",
    dt0=None,
):
    """Solve a non-stiff ODE system using Tsit5 (explicit RK4/5).

    Used for background integration (Friedmann equation is not stiff).

    Args:
        rhs_fn: callable (t, y, args) -> dy, the ODE right-hand side
        t0: initial time
        t1: final time
        y0: initial state vector
        saveat: Diffrax SaveAt specification (e.g., SaveAt(ts=time_grid))
        args: additional arguments passed to rhs_fn
        rtol: relative tolerance
        atol: absolute tolerance
        max_steps: maximum number of solver steps
        adjoint: "recursive_checkpoint" or "direct"
        dt0: initial step size (None for auto)

    Returns:
        Diffrax solution object with .ys (saved states) and .ts (saved times)
    """
    return diffrax.diffeqsolve(
        diffrax.ODETerm(rhs_fn),
        solver=diffrax.Tsit5(),
        t0=t0,
        t1=t1,
        dt0=dt0,
        y0=y0,
        saveat=saveat,
        stepsize_controller=diffrax.PIDController(rtol=rtol, atol=atol),
        adjoint=_get_adjoint(adjoint),
        max_steps=max_steps,
        args=args,
    )


def solve_stiff(
    rhs_fn,
    t0: float,
    t1: float,
    y0: Float[Array, "D"],
    saveat: diffrax.SaveAt,
    args=None,
    rtol: float = 1e-5,
    atol: float = 1e-10,
    max_steps: int = 16384,
    adjoint: str = "recursive_checkpoint",
    dt0=None,
    throw: bool = True,
):
    """Solve a stiff ODE system using Kvaerno5 (implicit ESDIRK).

    Used for recombination, where the Peebles and Compton rates exceed
    the expansion rate by many orders of magnitude.

    Args:
        rhs_fn: callable (t, y, args) -> dy
        t0: initial time
        t1: final time
        y0: initial state vector
        saveat: Diffrax SaveAt specification
        args: additional arguments passed to rhs_fn
        rtol: relative tolerance
        atol: absolute tolerance
        max_steps: maximum number of solver steps
        adjoint: "recursive_checkpoint" or "direct"
        dt0: initial step size (None for auto)
        throw: if False, failures are reported through sol.result instead of
            raising; pair with check_solution() to get a NumericalDivergence

    Returns:
        Diffrax solution object
    """
    return diffrax.diffeqsolve(
        diffrax.ODETerm(rhs_fn),
        solver=diffrax.Kvaerno5(),
        t0=t0,
        t1=t1,
        dt0=dt0,
        y0=y0,
        saveat=saveat,
        stepsize_controller=diffrax.PIDController(rtol=rtol, atol=atol),
        adjoint=_get_adjoint(adjoint),
        max_steps=max_steps,
        args=args,
        throw=throw,
    )


def check_solution(sol, what: str, z_of_t=None) -> None:
    """Raise NumericalDivergence if a solve failed or produced non-finite states.

    Args:
        sol: Diffrax solution obtained with throw=False and SaveAt(ts=...)
        what: name of the integrated system, used in the message
        z_of_t: optional callable mapping solver time to redshift for the report
    """
    ys = np.asarray(sol.ys)
    finite_rows = np.all(np.isfinite(ys.reshape(ys.shape[0], -1)), axis=1)
    succeeded = bool(sol.result == diffrax.RESULTS.successful)
    if succeeded and finite_rows.all():
        return

    ts = np.asarray(sol.ts)
    bad = np.nonzero(~finite_rows)[0]
    last_good = (int(bad[0]) - 1) if bad.size else len(ts) - 1
    t_fail = float(ts[max(last_good, 0)])
    z_fail = float(z_of_t(t_fail)) if z_of_t is not None else t_fail
    num_steps = int(np.asarray(sol.stats["num_steps"]))
    reason = "integrator failed" if not succeeded else "non-finite state"
    raise NumericalDivergence(f"{what}: {reason}", z=z_fail, iterations=num_steps)


def _get_adjoint(adjoint: str):
    """Return the Diffrax adjoint method from string name."""
    if adjoint == "recursive_checkpoint":
        return diffrax.RecursiveCheckpointAdjoint()
    elif adjoint == "direct":
        return diffrax.DirectAdjoint()
    else:
        raise ValueError(f"Unknown adjoint method: {adjoint}")
