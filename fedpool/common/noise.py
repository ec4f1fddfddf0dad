"""
Gaussian noise injection applied by participants before transmission.

Each leaf of every tensor receives an independent draw from N(0, sigma).
With ``noise_scale == 0`` the injector returns an exact, unperturbed copy.
"""

from typing import Optional

import numpy as np
from loguru import logger

from .tensor import ParameterSet, Tensor


class NoiseInjector:
    """
    Adds zero-mean Gaussian noise to every parameter of a ParameterSet.

    The input is never modified; a fresh ParameterSet of identical shape is
    returned.

    Example:
        >>> injector = NoiseInjector(noise_scale=0.01, seed=42)
        >>> noisy = injector.inject(params)
        >>> noisy.signature == params.signature
        True
    """

    def __init__(self, noise_scale: float, seed: Optional[int] = None):
        """
        Args:
            noise_scale: Standard deviation of the added noise (must be >= 0)
            seed: Optional seed for reproducible draws
        """
        if noise_scale < 0:
            raise ValueError(f"noise_scale must be >= 0, got {noise_scale}")
        self.noise_scale = float(noise_scale)
        self._rng = np.random.default_rng(seed)

        log = logger.bind(context="NoiseInjector.__init__")
        log.debug(f"Initialized noise injector with sigma={self.noise_scale}")

    def inject(self, parameters: ParameterSet) -> ParameterSet:
        """
        Perturb every leaf with an independent N(0, sigma) sample.

        Args:
            parameters: ParameterSet to perturb

        Returns:
            New ParameterSet with the same signature
        """
        log = logger.bind(context="NoiseInjector.inject")

        if self.noise_scale == 0.0:
            log.trace("Noise scale is zero, returning exact copy")
            return parameters.copy()

        noisy_layers = []
        for layer in parameters:
            noise = self._rng.normal(loc=0.0, scale=self.noise_scale, size=layer.shape)
            noisy_layers.append(Tensor(layer.data + noise))

        log.debug(
            f"Injected noise (sigma={self.noise_scale}) into "
            f"{parameters.num_parameters:,} parameters"
        )
        return ParameterSet(noisy_layers)
