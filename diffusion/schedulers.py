# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Noise schedulers for diffusion sampling.

Each scheduler owns one sampling algorithm's timestep table and its
per-step update rule:

- **DDPMScheduler** — Denoising Diffusion Probabilistic Models (Ho et al. 2020)
- **DDIMScheduler** — Denoising Diffusion Implicit Models (Song et al. 2020)
- **EulerDiscreteScheduler** — Euler method on the probability-flow ODE
- **EulerAncestralDiscreteScheduler** — Euler step plus ancestral noise
- **LMSDiscreteScheduler** — linear multistep over up to four sigmas
- **KDPM2DiscreteScheduler** — two-substep DPM-Solver-2 (Karras et al. 2022)
- **LCMScheduler** — Latent Consistency Model single-step mapping

Lifecycle::

    scheduler = get_scheduler(SchedulerType.DDIM, generator=rng)
    with scheduler:
        timesteps = scheduler.initialize(options)
        latents = scheduler.create_random_sample((1, 4, 64, 64))
        for t in timesteps:
            x = scheduler.scale_input(latents, t)
            noise_pred = unet(x, t)
            latents = scheduler.step(noise_pred, t, latents)

A scheduler is initialised exactly once, stepped with timesteps in
schedule order, and never shared between concurrent generations.
"""
from __future__ import annotations

import abc
import collections
import numpy as np
from scipy import integrate
from typing import Optional, Sequence, Union

from diffusekit.errors import InvalidStepOrder, SchedulerError, ShapeMismatch
from diffusekit.tensor import Tensor
from diffusekit.utils import setup_logger
from .options import SchedulerOptions, SchedulerType
from .utils import get_beta_schedule, randn_tensor

logger = setup_logger(__name__)

TimestepsLike = Union[int, Sequence[int], Tensor]


# ═════════════════════════════════════════════════════════════════════
#  Helpers
# ═════════════════════════════════════════════════════════════════════

def _broadcast_to_ndim(arr: np.ndarray, ndim: int) -> np.ndarray:
    """Reshape a 1-D array to broadcast against an ndim tensor: (B,) → (B,1,…,1)."""
    shape = [-1] + [1] * (ndim - 1)
    return arr.reshape(shape)


def _as_timestep_array(timesteps: TimestepsLike) -> np.ndarray:
    if isinstance(timesteps, Tensor):
        return timesteps.numpy().astype(np.int64).ravel()
    return np.atleast_1d(np.asarray(timesteps, dtype=np.int64)).ravel()


def spaced_timesteps(options: SchedulerOptions) -> np.ndarray:
    """Descending integer timesteps for the configured spacing strategy."""
    n = options.inference_steps
    T = options.train_timesteps
    spacing = options.timestep_spacing

    if spacing == 'linspace':
        timesteps = np.round(np.linspace(0, T - 1, n))[::-1]
    elif spacing == 'leading':
        step_ratio = T // n
        timesteps = (np.arange(0, n) * step_ratio)[::-1] + options.steps_offset
    elif spacing == 'trailing':
        timesteps = np.round(T - np.arange(n) * (T / n)) - 1
    else:
        raise ValueError(f"Unknown timestep spacing: {spacing!r}")
    return np.clip(timesteps, 0, T - 1).astype(np.int64)


def _strictly_decreasing(timesteps: np.ndarray) -> np.ndarray:
    """Lift repeated integer timesteps so each is one above its successor.

    Rounded sigma-derived timesteps collide where the ramp is dense
    (the Karras tail); the sigma table itself is left untouched.
    """
    out = np.maximum(np.asarray(timesteps, dtype=np.int64), 0)
    for i in range(len(out) - 2, -1, -1):
        out[i] = max(out[i], out[i + 1] + 1)
    return out


# ═════════════════════════════════════════════════════════════════════
#  SchedulerBase
# ═════════════════════════════════════════════════════════════════════

class SchedulerBase(abc.ABC):
    """Shared lifecycle and step-order bookkeeping.

    Subclasses implement ``_set_timesteps`` (build the tables) and
    ``_step`` (the recurrence for one schedule index).  The default
    ``add_noise`` is the variance-preserving forward process
    ``sqrt(ᾱ_t)·x₀ + sqrt(1 − ᾱ_t)·ε``.

    Args:
        generator: Session-owned random generator used for every noise
                   draw this scheduler makes.
    """

    #: Number of model evaluations per visited timestep.
    order: int = 1

    def __init__(self, generator: Optional[np.random.Generator] = None):
        self.generator = generator if generator is not None else np.random.default_rng()
        self.options: Optional[SchedulerOptions] = None
        self.betas: Optional[np.ndarray] = None
        self.alphas_cumprod: Optional[np.ndarray] = None
        self._timesteps: Optional[np.ndarray] = None
        self._last_index = -1
        self._disposed = False

    # ---- lifecycle ----

    def initialize(self, options: SchedulerOptions) -> list[int]:
        """Build the noise tables and return the ordered timesteps."""
        if self._disposed:
            raise SchedulerError(f"{type(self).__name__} has been disposed")
        if self._timesteps is not None:
            raise SchedulerError(
                f"{type(self).__name__} is already initialized; create a new instance"
            )
        self.options = options
        self.betas = get_beta_schedule(
            options.beta_schedule, options.train_timesteps,
            options.beta_start, options.beta_end, options.trained_betas,
        )
        self.alphas_cumprod = np.cumprod(1.0 - self.betas, dtype=np.float32)
        self._timesteps = self._set_timesteps(options)
        logger.debug(
            f"{type(self).__name__}: {len(self._timesteps)} timesteps "
            f"({options.timestep_spacing}, {options.beta_schedule})"
        )
        return self.timesteps

    def dispose(self) -> None:
        """Release tables and history; the instance cannot be stepped again."""
        self._release()
        self.betas = None
        self.alphas_cumprod = None
        self._timesteps = None
        self._disposed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()
        return False

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def timesteps(self) -> list[int]:
        self._check_ready()
        return [int(t) for t in self._timesteps]

    @property
    def init_noise_sigma(self) -> float:
        return 1.0

    # ---- public API ----

    def create_random_sample(self, dimensions: Sequence[int],
                             initial_noise_level: float = 1.0) -> Tensor:
        """Standard-normal latents scaled by the initial sigma."""
        self._check_ready()
        noise = randn_tensor(dimensions, self.generator)
        return noise.multiply_by(self.init_noise_sigma * initial_noise_level)

    def scale_input(self, latents: Tensor, timestep: int) -> Tensor:
        """Identity for discrete-time formulations."""
        self._check_ready()
        return latents

    def add_noise(self, original: Tensor, noise: Tensor,
                  timesteps: TimestepsLike) -> Tensor:
        """Forward diffusion q(x_t | x₀)."""
        self._check_ready()
        if original.shape != noise.shape:
            raise ShapeMismatch('add_noise', original.shape, noise.shape)
        t = _as_timestep_array(timesteps)
        ndim = original.ndim
        ac = self.alphas_cumprod[t]
        s_a = _broadcast_to_ndim(np.sqrt(ac), ndim)
        s_1a = _broadcast_to_ndim(np.sqrt(1.0 - ac), ndim)
        noisy = s_a * original._data + s_1a * noise._data
        return Tensor._wrap(noisy.astype(np.float32))

    def step(self, model_output: Tensor, timestep: int, latents: Tensor) -> Tensor:
        """Advance *latents* from *timestep* to the next scheduled timestep."""
        if model_output.shape != latents.shape:
            raise ShapeMismatch('step', model_output.shape, latents.shape)
        index = self._index_for(timestep)
        prev = self._step(model_output._data, index, latents._data)
        self._last_index = index
        return Tensor._wrap(prev.astype(np.float32))

    # ---- subclass hooks ----

    @abc.abstractmethod
    def _set_timesteps(self, options: SchedulerOptions) -> np.ndarray:
        ...

    @abc.abstractmethod
    def _step(self, model_output: np.ndarray, index: int,
              sample: np.ndarray) -> np.ndarray:
        ...

    def _release(self) -> None:
        pass

    # ---- shared internals ----

    def _check_ready(self) -> None:
        if self._disposed:
            raise SchedulerError(f"{type(self).__name__} has been disposed")
        if self._timesteps is None:
            raise SchedulerError(f"{type(self).__name__} is not initialized")

    def _index_for(self, timestep: int) -> int:
        """Schedule index of *timestep*, which must lie after the last step."""
        self._check_ready()
        matches = np.flatnonzero(self._timesteps == int(timestep))
        if matches.size == 0:
            raise InvalidStepOrder(timestep, "timestep is not part of the schedule")
        later = matches[matches > self._last_index]
        if later.size == 0:
            raise InvalidStepOrder(
                timestep,
                f"timestep was already stepped (last index {self._last_index})",
            )
        index = int(later[0])
        # A walk may start anywhere (strength), but never skips once started
        if self._last_index >= 0 and index != self._last_index + 1:
            raise InvalidStepOrder(
                timestep,
                f"expected schedule index {self._last_index + 1}, got {index}",
            )
        return index

    def _is_final(self, index: int) -> bool:
        return index == len(self._timesteps) - 1

    def _noise_like(self, sample: np.ndarray) -> np.ndarray:
        return self.generator.standard_normal(sample.shape, dtype=np.float32)

    def _alpha_prev(self, index: int, final_alpha: float = 1.0) -> float:
        if index + 1 < len(self._timesteps):
            return float(self.alphas_cumprod[self._timesteps[index + 1]])
        return final_alpha

    def _predict_original(self, model_output: np.ndarray, sample: np.ndarray,
                          alpha_prod_t: float) -> tuple[np.ndarray, np.ndarray]:
        """Return (x₀, ε) from the model output under the prediction type."""
        beta_prod_t = 1.0 - alpha_prod_t
        prediction_type = self.options.prediction_type
        if prediction_type == 'epsilon':
            eps = model_output
            x0 = (sample - np.sqrt(beta_prod_t) * eps) / np.sqrt(alpha_prod_t)
        elif prediction_type == 'v_prediction':
            x0 = np.sqrt(alpha_prod_t) * sample - np.sqrt(beta_prod_t) * model_output
            eps = np.sqrt(alpha_prod_t) * model_output + np.sqrt(beta_prod_t) * sample
        elif prediction_type == 'sample':
            x0 = model_output
            eps = (sample - np.sqrt(alpha_prod_t) * x0) / np.sqrt(beta_prod_t)
        else:
            raise ValueError(f"Unknown prediction type: {prediction_type!r}")
        if self.options.clip_sample:
            r = self.options.clip_sample_range
            x0 = np.clip(x0, -r, r)
        return x0, eps


# ═════════════════════════════════════════════════════════════════════
#  DDPMScheduler
# ═════════════════════════════════════════════════════════════════════

class DDPMScheduler(SchedulerBase):
    """Denoising Diffusion Probabilistic Models (Ho et al. 2020).

    Samples the posterior q(x_{t'} | x_t, x₀) between consecutive
    scheduled timesteps, adding fresh noise with ``fixed_small`` or
    ``fixed_large`` variance on every step except the last.
    """

    def _set_timesteps(self, options):
        return spaced_timesteps(options)

    def _variance(self, alpha_prod_t: float, alpha_prod_prev: float,
                  current_beta: float) -> float:
        if self.options.variance_type == 'fixed_large':
            return current_beta
        variance = (1.0 - alpha_prod_prev) / (1.0 - alpha_prod_t) * current_beta
        return max(variance, 1e-20)

    def _step(self, model_output, index, sample):
        t = int(self._timesteps[index])
        alpha_prod_t = float(self.alphas_cumprod[t])
        alpha_prod_prev = self._alpha_prev(index)
        beta_prod_t = 1.0 - alpha_prod_t
        beta_prod_prev = 1.0 - alpha_prod_prev
        current_alpha = alpha_prod_t / alpha_prod_prev
        current_beta = 1.0 - current_alpha

        pred_x0, _ = self._predict_original(model_output, sample, alpha_prod_t)

        # Posterior mean coefficients (formula 7, Ho et al.)
        coef_x0 = np.sqrt(alpha_prod_prev) * current_beta / beta_prod_t
        coef_xt = np.sqrt(current_alpha) * beta_prod_prev / beta_prod_t
        prev = coef_x0 * pred_x0 + coef_xt * sample

        if not self._is_final(index):
            variance = self._variance(alpha_prod_t, alpha_prod_prev, current_beta)
            prev = prev + np.sqrt(variance) * self._noise_like(sample)
        return prev


# ═════════════════════════════════════════════════════════════════════
#  DDIMScheduler
# ═════════════════════════════════════════════════════════════════════

class DDIMScheduler(SchedulerBase):
    """Denoising Diffusion Implicit Models (Song et al. 2020).

    Deterministic when ``eta == 0``; the last step maps to
    ``final_alpha_cumprod`` (1.0, i.e. the clean sample).
    """

    def __init__(self, generator=None, set_alpha_to_one: bool = True):
        super().__init__(generator)
        self.set_alpha_to_one = set_alpha_to_one

    def _set_timesteps(self, options):
        return spaced_timesteps(options)

    @property
    def final_alpha_cumprod(self) -> float:
        if self.set_alpha_to_one:
            return 1.0
        return float(self.alphas_cumprod[0])

    def _step(self, model_output, index, sample):
        t = int(self._timesteps[index])
        alpha_prod_t = float(self.alphas_cumprod[t])
        alpha_prod_prev = self._alpha_prev(index, self.final_alpha_cumprod)
        beta_prod_t = 1.0 - alpha_prod_t
        beta_prod_prev = 1.0 - alpha_prod_prev

        pred_x0, pred_eps = self._predict_original(model_output, sample, alpha_prod_t)

        eta = self.options.eta
        variance = (beta_prod_prev / beta_prod_t) * (1.0 - alpha_prod_t / alpha_prod_prev)
        std_dev = eta * np.sqrt(max(variance, 0.0))

        pred_dir = np.sqrt(max(1.0 - alpha_prod_prev - std_dev ** 2, 0.0)) * pred_eps
        prev = np.sqrt(alpha_prod_prev) * pred_x0 + pred_dir

        if eta > 0 and not self._is_final(index):
            prev = prev + std_dev * self._noise_like(sample)
        return prev


# ═════════════════════════════════════════════════════════════════════
#  LCMScheduler
# ═════════════════════════════════════════════════════════════════════

class LCMScheduler(SchedulerBase):
    """Latent Consistency Model multistep sampling (Luo et al. 2023).

    Timesteps are taken from the distillation grid of
    ``original_inference_steps``.  Each step maps the prediction to a
    clean-sample estimate through the consistency boundary condition
    and re-noises it to the next timestep, except on the last step.

    Args:
        generator:         Session-owned generator.
        timestep_scaling:  Scale applied to t inside ``c_skip`` / ``c_out``.
        sigma_data:        Data standard deviation of the boundary condition.
    """

    def __init__(self, generator=None, timestep_scaling: float = 10.0,
                 sigma_data: float = 0.5, set_alpha_to_one: bool = True):
        super().__init__(generator)
        self.timestep_scaling = timestep_scaling
        self.sigma_data = sigma_data
        self.set_alpha_to_one = set_alpha_to_one

    def _set_timesteps(self, options):
        n = options.inference_steps
        original_steps = options.original_inference_steps
        if n > original_steps:
            raise ValueError(
                f"inference_steps ({n}) cannot exceed original_inference_steps "
                f"({original_steps}) for LCM sampling"
            )
        c = options.train_timesteps // original_steps
        origin = np.arange(1, original_steps + 1) * c - 1
        skipping_step = len(origin) // n
        return origin[::-skipping_step][:n].astype(np.int64)

    def boundary_scalings(self, timestep: int) -> tuple[float, float]:
        """``(c_skip, c_out)`` for the discrete-time boundary condition."""
        scaled = timestep * self.timestep_scaling
        sd2 = self.sigma_data ** 2
        c_skip = sd2 / (scaled ** 2 + sd2)
        c_out = scaled / np.sqrt(scaled ** 2 + sd2)
        return c_skip, float(c_out)

    def _step(self, model_output, index, sample):
        t = int(self._timesteps[index])
        final_alpha = 1.0 if self.set_alpha_to_one else float(self.alphas_cumprod[0])
        alpha_prod_t = float(self.alphas_cumprod[t])
        alpha_prod_prev = self._alpha_prev(index, final_alpha)

        c_skip, c_out = self.boundary_scalings(t)
        pred_x0, _ = self._predict_original(model_output, sample, alpha_prod_t)
        denoised = c_out * pred_x0 + c_skip * sample

        if self._is_final(index):
            return denoised
        noise = self._noise_like(sample)
        return np.sqrt(alpha_prod_prev) * denoised + np.sqrt(1.0 - alpha_prod_prev) * noise


# ═════════════════════════════════════════════════════════════════════
#  Sigma-parameterised schedulers
# ═════════════════════════════════════════════════════════════════════

class SigmaSchedulerBase(SchedulerBase):
    """Base for schedulers that integrate in sigma = sqrt((1 − ᾱ)/ᾱ) space.

    Latents live at scale ``sqrt(σ² + 1)`` so the model input is
    rescaled by ``scale_input`` and ``add_noise`` is ``x₀ + σ_t·ε``.
    """

    def __init__(self, generator=None):
        super().__init__(generator)
        self.sigmas: Optional[np.ndarray] = None
        self.log_sigmas: Optional[np.ndarray] = None

    def _set_timesteps(self, options):
        sigmas_full = np.sqrt((1.0 - self.alphas_cumprod) / self.alphas_cumprod).astype(np.float32)
        self.log_sigmas = np.log(sigmas_full)

        timesteps = spaced_timesteps(options)
        sigmas = sigmas_full[timesteps].astype(np.float64)
        if options.use_karras_sigmas:
            sigmas = self._karras_sigmas(sigmas, options.inference_steps)
            timesteps = _strictly_decreasing(np.round(self._sigma_to_t(sigmas)))
        self.sigmas = np.append(sigmas, 0.0).astype(np.float32)
        return timesteps

    @staticmethod
    def _karras_sigmas(sigmas: np.ndarray, n: int,
                       rho: float = 7.0) -> np.ndarray:
        """Karras et al. sigma ramp."""
        s_min = float(sigmas[-1])
        s_max = float(sigmas[0])
        ramp = np.linspace(0, 1, n, dtype=np.float64)
        min_inv = s_min ** (1.0 / rho)
        max_inv = s_max ** (1.0 / rho)
        return (max_inv + ramp * (min_inv - max_inv)) ** rho

    def _sigma_to_t(self, sigma: np.ndarray) -> np.ndarray:
        """Fractional training timestep for each sigma (log-linear interpolation)."""
        log_sigma = np.log(np.maximum(np.atleast_1d(sigma), 1e-10))
        dists = log_sigma - self.log_sigmas[:, np.newaxis]
        low_idx = np.cumsum(dists >= 0, axis=0).argmax(axis=0).clip(max=self.log_sigmas.shape[0] - 2)
        high_idx = low_idx + 1
        low = self.log_sigmas[low_idx]
        high = self.log_sigmas[high_idx]
        w = np.clip((low - log_sigma) / (low - high), 0, 1)
        return (1 - w) * low_idx + w * high_idx

    @property
    def init_noise_sigma(self) -> float:
        self._check_ready()
        max_sigma = float(self.sigmas.max())
        if self.options.timestep_spacing in ('linspace', 'trailing'):
            return max_sigma
        return float(np.sqrt(max_sigma ** 2 + 1))

    def _input_sigma(self, index: int) -> float:
        return float(self.sigmas[index])

    def scale_input(self, latents: Tensor, timestep: int) -> Tensor:
        """Divide by ``sqrt(σ² + 1)`` so the model sees unit-variance input."""
        sigma = self._input_sigma(self._index_for(timestep))
        return latents.multiply_by(1.0 / np.sqrt(sigma ** 2 + 1))

    def sigma_for_timestep(self, timestep: int) -> float:
        self._check_ready()
        matches = np.flatnonzero(self._timesteps == int(timestep))
        if matches.size:
            return self._input_sigma(int(matches[0]))
        # Off-schedule timesteps interpolate the training table
        T = self.options.train_timesteps
        sigmas_full = np.exp(self.log_sigmas)
        return float(np.interp(timestep, np.arange(T), sigmas_full))

    def add_noise(self, original: Tensor, noise: Tensor,
                  timesteps: TimestepsLike) -> Tensor:
        """Variance-exploding forward process ``x₀ + σ_t·ε``."""
        self._check_ready()
        if original.shape != noise.shape:
            raise ShapeMismatch('add_noise', original.shape, noise.shape)
        t = _as_timestep_array(timesteps)
        sigma = np.asarray([self.sigma_for_timestep(v) for v in t], dtype=np.float32)
        sigma = _broadcast_to_ndim(sigma, original.ndim)
        noisy = original._data + sigma * noise._data
        return Tensor._wrap(noisy.astype(np.float32))

    def _sigma_predict_original(self, model_output: np.ndarray, sample: np.ndarray,
                                sigma: float) -> np.ndarray:
        prediction_type = self.options.prediction_type
        if prediction_type == 'epsilon':
            return sample - sigma * model_output
        elif prediction_type == 'v_prediction':
            return (model_output * (-sigma / np.sqrt(sigma ** 2 + 1))
                    + sample / (sigma ** 2 + 1))
        elif prediction_type == 'sample':
            return model_output
        raise ValueError(f"Unknown prediction type: {prediction_type!r}")

    def _release(self):
        self.sigmas = None
        self.log_sigmas = None


# ═════════════════════════════════════════════════════════════════════
#  EulerDiscreteScheduler
# ═════════════════════════════════════════════════════════════════════

class EulerDiscreteScheduler(SigmaSchedulerBase):
    """Euler method on the ODE probability flow (Karras et al. 2022)."""

    def _step(self, model_output, index, sample):
        sigma = float(self.sigmas[index])
        sigma_next = float(self.sigmas[index + 1])
        pred_x0 = self._sigma_predict_original(model_output, sample, sigma)

        derivative = (sample - pred_x0) / sigma
        return sample + derivative * (sigma_next - sigma)


# ═════════════════════════════════════════════════════════════════════
#  EulerAncestralDiscreteScheduler
# ═════════════════════════════════════════════════════════════════════

class EulerAncestralDiscreteScheduler(SigmaSchedulerBase):
    """Ancestral Euler sampling.

    Steps deterministically down to ``σ_down`` then injects fresh noise
    of scale ``σ_up`` so the marginal lands on ``σ_next``:

        σ_up   = sqrt(σ_next² · (σ² − σ_next²) / σ²)
        σ_down = sqrt(σ_next² − σ_up²)
    """

    def _step(self, model_output, index, sample):
        sigma_from = float(self.sigmas[index])
        sigma_to = float(self.sigmas[index + 1])
        pred_x0 = self._sigma_predict_original(model_output, sample, sigma_from)

        sigma_up = np.sqrt(sigma_to ** 2 * (sigma_from ** 2 - sigma_to ** 2) / sigma_from ** 2)
        sigma_down = np.sqrt(sigma_to ** 2 - sigma_up ** 2)

        derivative = (sample - pred_x0) / sigma_from
        prev = sample + derivative * (sigma_down - sigma_from)
        if not self._is_final(index):
            prev = prev + self._noise_like(sample) * sigma_up
        return prev


# ═════════════════════════════════════════════════════════════════════
#  LMSDiscreteScheduler
# ═════════════════════════════════════════════════════════════════════

class LMSDiscreteScheduler(SigmaSchedulerBase):
    """Linear multistep sampling over the last ``order`` derivatives.

    Coefficients integrate the Lagrange basis polynomial through the
    previous sigmas across the current interval ``[σ_i, σ_{i+1}]``.

    Args:
        generator: Session-owned generator.
        lms_order: Maximum history depth (1–4).
    """

    def __init__(self, generator=None, lms_order: int = 4):
        super().__init__(generator)
        if not 1 <= lms_order <= 4:
            raise ValueError(f"lms_order must be within [1, 4], got {lms_order}")
        self.lms_order = lms_order
        self.derivatives: collections.deque = collections.deque(maxlen=lms_order)

    def lms_coefficient(self, order: int, index: int, current_order: int) -> float:
        sigmas = self.sigmas

        def lms_derivative(tau):
            prod = 1.0
            for k in range(order):
                if current_order == k:
                    continue
                prod *= (tau - sigmas[index - k]) / (sigmas[index - current_order] - sigmas[index - k])
            return prod

        return integrate.quad(lms_derivative, sigmas[index], sigmas[index + 1], epsrel=1e-4)[0]

    def _step(self, model_output, index, sample):
        sigma = float(self.sigmas[index])
        pred_x0 = self._sigma_predict_original(model_output, sample, sigma)

        self.derivatives.append((sample - pred_x0) / sigma)
        order = min(len(self.derivatives), self.lms_order)
        coefficients = [self.lms_coefficient(order, index, j) for j in range(order)]

        prev = sample
        for coeff, derivative in zip(coefficients, reversed(self.derivatives)):
            prev = prev + coeff * derivative
        return prev

    def _release(self):
        self.derivatives.clear()
        super()._release()


# ═════════════════════════════════════════════════════════════════════
#  KDPM2DiscreteScheduler
# ═════════════════════════════════════════════════════════════════════

class KDPM2DiscreteScheduler(SigmaSchedulerBase):
    """DPM-Solver-2 (Karras et al. 2022, Algorithm 2).

    Every visited timestep after the first is preceded by an interpolated
    midpoint timestep, giving ``2n − 1`` model evaluations.  Even schedule
    indices take a first-order step to the midpoint sigma and cache the
    sample; odd indices evaluate the derivative at the midpoint and apply
    it to the cached sample over the full interval.
    """

    order = 2

    def __init__(self, generator=None):
        super().__init__(generator)
        self.sigmas_interpol: Optional[np.ndarray] = None
        self._cached_sample: Optional[np.ndarray] = None

    def _set_timesteps(self, options):
        n = options.inference_steps
        if 2 * n - 1 > options.train_timesteps:
            raise ValueError(
                f"KDPM2 visits {2 * n - 1} timesteps for {n} steps, more than "
                f"train_timesteps ({options.train_timesteps})"
            )
        timesteps = super()._set_timesteps(options)
        sigmas = self.sigmas.astype(np.float64)

        # Log-space midpoint between each sigma and its predecessor
        with np.errstate(divide='ignore', invalid='ignore'):
            log_sigmas = np.log(sigmas)
            log_rolled = np.log(np.roll(sigmas, 1))
            sigmas_interpol = np.exp(log_sigmas + 0.5 * (log_rolled - log_sigmas))
        sigmas_interpol = np.nan_to_num(sigmas_interpol, nan=0.0)

        self.sigmas = np.concatenate(
            [sigmas[:1], np.repeat(sigmas[1:], 2), sigmas[-1:]]
        ).astype(np.float32)
        self.sigmas_interpol = np.concatenate(
            [sigmas_interpol[:1], np.repeat(sigmas_interpol[1:], 2), sigmas_interpol[-1:]]
        ).astype(np.float32)

        timesteps_interpol = np.round(self._sigma_to_t(sigmas_interpol)).astype(np.int64)
        interleaved = np.stack([timesteps_interpol[1:-1], timesteps[1:]], axis=-1).ravel()
        return _strictly_decreasing(np.concatenate([timesteps[:1], interleaved]))

    @staticmethod
    def _first_order(index: int) -> bool:
        return index % 2 == 0

    def _input_sigma(self, index):
        if self._first_order(index):
            return float(self.sigmas[index])
        return float(self.sigmas_interpol[index])

    def _step(self, model_output, index, sample):
        if self._first_order(index):
            sigma = float(self.sigmas[index])
            sigma_interpol = float(self.sigmas_interpol[index + 1])
            pred_x0 = self._sigma_predict_original(model_output, sample, sigma)
            derivative = (sample - pred_x0) / sigma
            self._cached_sample = sample
            return sample + derivative * (sigma_interpol - sigma)

        if self._cached_sample is None:
            raise InvalidStepOrder(
                int(self._timesteps[index]),
                "second-order substep requires the preceding first-order substep",
            )
        sigma = float(self.sigmas[index - 1])
        sigma_interpol = float(self.sigmas_interpol[index])
        sigma_next = float(self.sigmas[index])
        pred_x0 = self._sigma_predict_original(model_output, sample, sigma_interpol)
        derivative = (sample - pred_x0) / sigma_interpol
        prev = self._cached_sample + derivative * (sigma_next - sigma)
        self._cached_sample = None
        return prev

    def _release(self):
        self._cached_sample = None
        self.sigmas_interpol = None
        super()._release()


# ═════════════════════════════════════════════════════════════════════
#  Registry
# ═════════════════════════════════════════════════════════════════════

SCHEDULERS: dict[SchedulerType, type[SchedulerBase]] = {
    SchedulerType.LMS: LMSDiscreteScheduler,
    SchedulerType.EULER: EulerDiscreteScheduler,
    SchedulerType.EULER_ANCESTRAL: EulerAncestralDiscreteScheduler,
    SchedulerType.DDPM: DDPMScheduler,
    SchedulerType.DDIM: DDIMScheduler,
    SchedulerType.KDPM2: KDPM2DiscreteScheduler,
    SchedulerType.LCM: LCMScheduler,
}


def get_scheduler(scheduler_type: Union[SchedulerType, str],
                  generator: Optional[np.random.Generator] = None) -> SchedulerBase:
    """Construct an uninitialised scheduler for *scheduler_type*."""
    try:
        cls = SCHEDULERS[SchedulerType(scheduler_type)]
    except (KeyError, ValueError):
        choices = ', '.join(t.value for t in SCHEDULERS)
        raise ValueError(
            f"Unsupported scheduler {scheduler_type!r}; choose one of: {choices}"
        ) from None
    return cls(generator=generator)


# ═════════════════════════════════════════════════════════════════════
#  Public exports
# ═════════════════════════════════════════════════════════════════════

__all__ = [
    'spaced_timesteps',
    'SchedulerBase',
    'SigmaSchedulerBase',
    'DDPMScheduler',
    'DDIMScheduler',
    'LCMScheduler',
    'EulerDiscreteScheduler',
    'EulerAncestralDiscreteScheduler',
    'LMSDiscreteScheduler',
    'KDPM2DiscreteScheduler',
    'SCHEDULERS',
    'get_scheduler',
]
