"""Thermodynamic helpers for the polymer equilibrium problem.

Concentrations are expressed relative to the molarity of water so that the
monomer constraints and the polymer Boltzmann factors live on the same
(mole fraction) scale. Free energies are given in kcal/mol.
"""

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, ArrayLike, Float, jaxtyped

# Gas constant in kcal / (mol K)
BOLTZMANN_KCAL = 0.00198717
CELSIUS_TO_KELVIN = 273.15
WATER_MOLAR_MASS = 18.0152  # g/mol

# Energy floor in kcal/mol. It bounds the exponent by 230 / kT, well inside
# the float64 range at any liquid-water temperature.
SMALLEST_ENERGY_VALUE = -230.0
# Exponent floor: e^-230 is still a normal float64, so log() of the weights
# stays finite.
SMALLEST_EXP_VALUE = -230.0

# Coefficients of the quartic-in-temperature water density correlation
_A1 = -3.983035
_A2 = 301.797
_A3 = 522528.9
_A4 = 69.34881
_A5 = 999.974950  # kg/m^3 at the density maximum


def water_density(temp_celsius: float) -> float:
    """Density of liquid water in g/cm^3 at ``temp_celsius``.

    Uses the closed-form correlation

        rho(T) = a5 * (1 - (T + a1)^2 (T + a2) / (a3 (T + a4)))

    which reproduces the IAPWS-95 values between 0 and 100 °C and peaks at
    about 0.99997 g/cm^3 near 4 °C.
    """
    t = float(temp_celsius)
    rho = _A5 * (1.0 - (t + _A1) * (t + _A1) * (t + _A2) / _A3 / (t + _A4))
    return rho / 1000.0


def water_molarity(temp_celsius: float) -> float:
    """Molar concentration of pure water (mol/L) at ``temp_celsius``."""
    return water_density(temp_celsius) * 1000.0 / WATER_MOLAR_MASS


def thermal_energy(temp_celsius: float) -> float:
    """kT in kcal/mol."""
    return BOLTZMANN_KCAL * (float(temp_celsius) + CELSIUS_TO_KELVIN)


@jaxtyped(typechecker=beartype)
def boltzmann_factors(
    energies: Float[ArrayLike, " n"],
    kT: float = 1.0,
) -> Float[Array, " n"]:
    """Exponentiate free energies into Boltzmann weights ``exp(-E / kT)``.

    Energies are floored at ``SMALLEST_ENERGY_VALUE`` before dividing by
    ``kT``, so very favourable polymers cannot overflow to inf while distinct
    energies above the floor keep distinct weights. The exponent is then
    floored at ``SMALLEST_EXP_VALUE``, so very unfavourable polymers keep a
    tiny but non-zero weight instead of underflowing to 0.

    Args:
        energies: Free energies, one per polymer.
        kT: Thermal energy in the same units as ``energies``.

    Returns:
        Boltzmann weights, same shape as ``energies``.
    """
    floored = jnp.maximum(
        jnp.asarray(energies, dtype=jnp.float64), SMALLEST_ENERGY_VALUE
    )
    exponent = -floored / kT
    return jnp.exp(jnp.maximum(exponent, SMALLEST_EXP_VALUE))
