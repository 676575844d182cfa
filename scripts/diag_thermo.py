"""Check how the thermal history converges with the recombination grid."""
import sys
sys.path.insert(0, '.')
import logging
import numpy as np
import jax
jax.config.update("jax_enable_x64", True)
from jaxthermo import CosmoParams, PrecisionParams
from jaxthermo.background import background_solve
from jaxthermo.thermodynamics import thermodynamics_solve, thermodynamics_at_z, optical_depth_of_z

logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")

print("Devices:", jax.devices(), flush=True)
params = CosmoParams(reio_z_or_tau="tau", tau_reio=0.0544)
zs = [0.0, 5.0, 10.0, 50.0, 200.0, 800.0, 1000.0, 1090.0, 1300.0, 2000.0, 6000.0]

results = {}
for label, prec in [("fast", PrecisionParams.fast()), ("default", PrecisionParams())]:
    print(f"\n{label} precision (Nz0={prec.recfast_Nz0}):", flush=True)
    bg = background_solve(params, prec)
    th = thermodynamics_solve(params, prec, bg)
    print(f"  z_reio={float(th.z_reio):.4f}  tau_reio={float(th.tau_reio):.6f}", flush=True)
    print(f"  z_vis_max={float(th.z_visibility_max):.3f}  z_free_streaming={float(th.z_visibility_free_streaming):.2f}", flush=True)
    print(f"  tau_rec={float(th.tau_rec):.3f} Mpc  rs_rec={float(th.rs_rec):.4f} Mpc", flush=True)
    rows = [thermodynamics_at_z(th, z)[0] for z in zs]
    results[label] = np.array([[r["xe"], r["g"], r["Tb"]] for r in rows])
    print(f"  kappa(z=50)={optical_depth_of_z(th, 50.0):.6f}", flush=True)

print(f"\n{'z':>8} {'xe fast':>12} {'xe default':>12} {'rel diff':>10} {'Tb rel diff':>12}")
for i, z in enumerate(zs):
    xe_f, _, Tb_f = results["fast"][i]
    xe_d, _, Tb_d = results["default"][i]
    print(f"{z:8.1f} {xe_f:12.6e} {xe_d:12.6e} {(xe_f - xe_d) / xe_d:+10.2e} {(Tb_f - Tb_d) / Tb_d:+12.2e}")

print("\nDone!", flush=True)
