"""Physical constants and RECFAST coefficients for jaxthermo.

Values follow CLASS v1 (include/background.h and include/thermodynamics.h)
exactly so that recombination histories can be compared digit by digit.
Units: SI unless stated otherwise. The cosmological code uses c=1 with
lengths and times in Mpc, H in Mpc^-1.

References:
    CLASS source: include/thermodynamics.h (RECFAST 1.4 block)
    Seager, Sasselov & Scott (1999), Wong, Moss & Scott (2008)
"""

import math

# --- Conversion factors ---
# cf. background.h
Mpc_over_m = 3.085677581282e22
"""Conversion factor from meters to megaparsecs."""

Gyr_over_Mpc = 3.06601394e2
"""Conversion factor from megaparsecs to gigayears (c=1, Julian years of 365.25 days)."""

# --- Fundamental constants (SI) ---
c_SI = 2.99792458e8
"""Speed of light in m/s."""

G_SI = 6.67428e-11
"""Newton's gravitational constant in m^3/kg/s^2."""

k_B_SI = 1.3806504e-23
"""Boltzmann constant in J/K."""

h_P_SI = 6.62606896e-34
"""Planck constant in J*s."""

sigma_B = 2.0 * math.pi**5 * k_B_SI**4 / (15.0 * h_P_SI**3 * c_SI**2)
"""Stefan-Boltzmann constant in W/m^2/K^4 (= 5.670400e-8)."""

a_rad = 4.0 * sigma_B / c_SI
"""Radiation constant a_R = 4 sigma_B / c in J/(m^3 K^4)."""

# --- Particle physics, cf. thermodynamics.h ---
m_e = 9.10938215e-31
"""Electron mass in kg."""

m_p = 1.672621637e-27
"""Proton mass in kg."""

m_H = 1.673575e-27
"""Hydrogen atom mass in kg."""

not4 = 3.9715
"""Ratio of helium to hydrogen atomic mass."""

sigma_T = 6.6524616e-29
"""Thomson scattering cross section in m^2."""

# --- Defaults ---
T_cmb_default = 2.7255
"""Default CMB temperature today in Kelvin (Fixsen 2009)."""

Y_He_default = 0.25
"""Default primordial helium mass fraction."""

# --- Hard parameter bounds, cf. thermodynamics.h ---
TCMB_BIG = 2.8
"""Largest CMB temperature [K] accepted by the recombination code."""

TCMB_SMALL = 2.7
"""Smallest CMB temperature [K] accepted by the recombination code."""

YHE_BIG = 0.5
"""Largest helium mass fraction accepted by the recombination code."""

YHE_SMALL = 0.01
"""Smallest helium mass fraction accepted by the recombination code."""

# --- RECFAST atomic data, cf. thermodynamics.h ---
# Two-photon decay rates [s^-1]
Lambda = 8.2245809
Lambda_He = 51.3

# Wavenumbers [m^-1]
L_H_ion = 1.096787737e7
L_H_alpha = 8.225916453e6
L_He1_ion = 1.98310772e7
L_He2_ion = 4.389088863e7
L_He_2s = 1.66277434e7
L_He_2p = 1.71134891e7

# Helium Einstein coefficients [s^-1] and triplet levels [m^-1]
A2P_s = 1.798287e9
A2P_t = 177.58
L_He_2Pt = 1.690871466e7
L_He_2St = 1.5985597526e7
L_He2St_ion = 3.8454693845e6

# Photo-ionization cross sections [m^2]
sigma_He_2Ps = 1.436289e-22
sigma_He_2Pt = 1.484872e-22

# Pequignot, Petitjean & Boisson fit to case-B hydrogen recombination
a_PPB = 4.309
b_PPB = -0.6166
c_PPB = 0.6703
d_PPB = 0.5300

# Verner & Ferland fit to helium singlet recombination
a_VF = 10.0**-16.744
b_VF = 0.711
T_0 = 10.0**0.477121
T_1 = 10.0**5.114

# Helium triplet recombination fit
a_trip = 10.0**-16.306
b_trip = 0.761
