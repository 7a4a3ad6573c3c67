"""
Tests for diffusekit.diffusion.service.StableDiffusionService.
"""
import asyncio

import numpy as np
import pytest

from conftest import make_image
from diffusekit import Tensor
from diffusekit.diffusion import (
    BatchErrorPolicy,
    BatchOptions,
    BatchResult,
    BatchSweep,
    BatchType,
    DiffuserType,
    PromptOptions,
    SchedulerOptions,
    SchedulerType,
    latent_consistency,
)

SMALL = dict(width=64, height=64)


def test_generate_returns_image_tensor(service, sd_model):
    image = service.generate(sd_model, PromptOptions(prompt='x'),
                             SchedulerOptions(seed=1, inference_steps=3, **SMALL))
    assert isinstance(image, Tensor)
    assert image.shape == (1, 3, 64, 64)


def test_generate_result_reports_effective_options(service, sd_model):
    result = service.generate_result(sd_model, PromptOptions(prompt='x'),
                                     SchedulerOptions(seed=0, inference_steps=3, **SMALL))
    assert result.options.seed > 0
    assert result.steps == 3


def test_generate_async_matches_blocking(service, sd_model):
    options = SchedulerOptions(seed=5, inference_steps=3, **SMALL)
    blocking = service.generate(sd_model, PromptOptions(prompt='x'), options)
    awaited = asyncio.run(service.generate_async(sd_model, PromptOptions(prompt='x'), options))
    assert awaited == blocking


def test_generate_image_uses_codec(service, sd_model):
    image = service.generate_image(sd_model, PromptOptions(prompt='x'),
                                   SchedulerOptions(seed=1, inference_steps=2, **SMALL))
    assert isinstance(image, np.ndarray)
    assert image.dtype == np.uint8


def test_image_to_image_through_service(service, sd_model, engine):
    prompt = PromptOptions(prompt='x', diffuser_type=DiffuserType.IMAGE_TO_IMAGE,
                           input_image=make_image(64, 64))
    service.generate(sd_model, prompt,
                     SchedulerOptions(seed=1, inference_steps=4, strength=0.5, **SMALL))
    assert len(engine.calls_to('unet')) == 2


def test_unsupported_combination(service):
    lcm = latent_consistency()
    prompt = PromptOptions(diffuser_type=DiffuserType.IMAGE_INPAINT)
    with pytest.raises(ValueError):
        service.generate(lcm, prompt, SchedulerOptions(**SMALL))


def test_generate_batch_unpacks(service, sd_model):
    sweep = BatchSweep(seeds=[1, 2], scheduler_types=[SchedulerType.DDIM, SchedulerType.LMS])
    results = service.generate_batch(sd_model, PromptOptions(prompt='x'),
                                     SchedulerOptions(inference_steps=2, **SMALL), sweep)
    seen = []
    for image, options in results:
        assert image.shape == (1, 3, 64, 64)
        seen.append((options.seed, options.scheduler_type))
    assert seen == [(1, SchedulerType.DDIM), (1, SchedulerType.LMS),
                    (2, SchedulerType.DDIM), (2, SchedulerType.LMS)]


def test_generate_batch_from_batch_options(service, sd_model):
    batch = BatchOptions(batch_type=BatchType.STEP, value_from=1, value_to=3, increment=1)
    results = list(service.generate_batch(
        sd_model, PromptOptions(prompt='x'), SchedulerOptions(seed=1, **SMALL), batch,
        error_policy=BatchErrorPolicy.CONTINUE,
    ))
    assert all(isinstance(r, BatchResult) and r.ok for r in results)
    assert [r.options.inference_steps for r in results] == [1, 2, 3]
