"""
Tests for the diffuser orchestrators in diffusekit.diffusion.pipelines.
"""
import numpy as np
import pytest

from conftest import FakeEngine, make_image, make_mask
from diffusekit import DiffusionCancelled, InferenceError, Tensor
from diffusekit.diffusion import (
    CancellationToken,
    DiffuserType,
    EulerAncestralDiscreteScheduler,
    ModelType,
    PipelineType,
    PromptOptions,
    SchedulerOptions,
    SchedulerType,
    get_diffuser,
    get_scheduler,
    latent_consistency,
    stable_diffusion,
    stable_diffusion_xl,
)
from diffusekit.diffusion import pipelines
from diffusekit.diffusion.pipelines import PIPELINE_DIFFUSERS, resolve_seed
from diffusekit.diffusion.utils import randn_tensor

SMALL = dict(width=64, height=64)


def _diffuser(engine, prompt_provider, codec, diffuser_type=DiffuserType.TEXT_TO_IMAGE,
              pipeline_type=PipelineType.STABLE_DIFFUSION):
    return get_diffuser(pipeline_type, diffuser_type, engine, prompt_provider, codec)


def _image_prompt(diffuser_type, mask_value=None, size=64, control=False):
    return PromptOptions(
        prompt='a lighthouse at dusk',
        diffuser_type=diffuser_type,
        input_image=make_image(size, size),
        input_image_mask=None if mask_value is None else make_mask(size, size, mask_value),
        input_control_image=make_image(size, size) if control else None,
    )


# ═════════════════════════════════════════════════════════════════════
#  Text to image
# ═════════════════════════════════════════════════════════════════════

def test_text_to_image_without_guidance(engine, prompt_provider, codec, sd_model):
    events = []
    options = SchedulerOptions(seed=42, inference_steps=10, guidance_scale=1.0,
                               scheduler_type=SchedulerType.DDIM)
    diffuser = _diffuser(engine, prompt_provider, codec)
    result = diffuser.run(sd_model, PromptOptions(prompt='a cat'), options, events.append)

    unet_calls = engine.calls_to('unet')
    assert len(unet_calls) == 10
    assert all(c.shape('sample') == (1, 4, 64, 64) for c in unet_calls)
    assert [e.step for e in events] == list(range(1, 11))
    assert all(e.total == 10 for e in events)

    decoder_calls = engine.calls_to('vae_decoder')
    assert len(decoder_calls) == 1
    assert decoder_calls[0].shape('latent_sample') == (1, 4, 64, 64)
    assert result.image.shape == (1, 3, 512, 512)
    assert result.image.numpy().min() >= -1.0 and result.image.numpy().max() <= 1.0
    assert result.steps == 10
    assert prompt_provider.calls == [False]


def test_guidance_combines_before_every_step(engine, prompt_provider, codec, sd_model, monkeypatch):
    events = []
    original_guidance = pipelines.perform_guidance
    original_step = EulerAncestralDiscreteScheduler.step

    def recording_guidance(noise_pred, guidance_scale):
        events.append('guidance')
        assert noise_pred.shape[0] == 2
        return original_guidance(noise_pred, guidance_scale)

    def recording_step(self, model_output, timestep, latents):
        events.append('step')
        assert model_output.shape[0] == 1
        return original_step(self, model_output, timestep, latents)

    monkeypatch.setattr(pipelines, 'perform_guidance', recording_guidance)
    monkeypatch.setattr(EulerAncestralDiscreteScheduler, 'step', recording_step)

    options = SchedulerOptions(seed=7, inference_steps=10, guidance_scale=7.0,
                               scheduler_type=SchedulerType.EULER_ANCESTRAL)
    _diffuser(engine, prompt_provider, codec).run(sd_model, PromptOptions(prompt='a cat'), options)

    unet_calls = engine.calls_to('unet')
    assert len(unet_calls) == 10
    assert all(c.shape('sample') == (2, 4, 64, 64) for c in unet_calls)
    assert all(c.shape('encoder_hidden_states')[0] == 2 for c in unet_calls)
    assert events == ['guidance', 'step'] * 10
    assert prompt_provider.calls == [True]


def test_same_seed_is_bit_identical(prompt_provider, codec, sd_model):
    images = []
    for _ in range(2):
        diffuser = _diffuser(FakeEngine(), prompt_provider, codec)
        options = SchedulerOptions(seed=1234, inference_steps=6, **SMALL)
        images.append(diffuser.run(sd_model, PromptOptions(prompt='x'), options).image)
    assert images[0] == images[1]

    other = _diffuser(FakeEngine(), prompt_provider, codec).run(
        sd_model, PromptOptions(prompt='x'), SchedulerOptions(seed=1235, inference_steps=6, **SMALL)
    )
    assert other.image != images[0]


def test_seed_zero_is_resolved_without_mutating_caller(engine, prompt_provider, codec, sd_model):
    options = SchedulerOptions(seed=0, inference_steps=3, **SMALL)
    result = _diffuser(engine, prompt_provider, codec).run(sd_model, PromptOptions(), options)
    assert options.seed == 0
    assert result.options.seed != 0

    replay = _diffuser(FakeEngine(), prompt_provider, codec).run(
        sd_model, PromptOptions(), result.options
    )
    assert replay.image == result.image
    assert resolve_seed(result.options) is result.options


# ═════════════════════════════════════════════════════════════════════
#  Cancellation and failures
# ═════════════════════════════════════════════════════════════════════

def test_cancellation_stops_before_next_step(engine, prompt_provider, codec, sd_model):
    token = CancellationToken()

    def on_progress(progress):
        if progress.step == 3:
            token.cancel()

    options = SchedulerOptions(seed=5, inference_steps=10, **SMALL)
    with pytest.raises(DiffusionCancelled) as info:
        _diffuser(engine, prompt_provider, codec).run(
            sd_model, PromptOptions(), options, on_progress, token
        )
    assert info.value.completed_steps == 3
    assert len(engine.calls_to('unet')) == 3
    assert engine.calls_to('vae_decoder') == []


def test_engine_failure_is_wrapped(prompt_provider, codec, sd_model):
    engine = FakeEngine(fail_component='unet')
    with pytest.raises(InferenceError) as info:
        _diffuser(engine, prompt_provider, codec).run(
            sd_model, PromptOptions(), SchedulerOptions(seed=1, inference_steps=4, **SMALL)
        )
    assert info.value.model_id == 'sd15/unet'
    assert isinstance(info.value.__cause__, RuntimeError)
    assert len(engine.calls_to('unet')) == 1


def test_missing_output_names_the_tensor(prompt_provider, codec, sd_model):
    engine = FakeEngine(drop_output='sample')
    with pytest.raises(InferenceError) as info:
        _diffuser(engine, prompt_provider, codec).run(
            sd_model, PromptOptions(), SchedulerOptions(seed=1, inference_steps=2, **SMALL)
        )
    assert info.value.model_id == 'sd15/vae_decoder'
    assert info.value.tensor_name == 'sample'


def test_wrong_output_shape_is_rejected(prompt_provider, codec, sd_model):
    engine = FakeEngine(bad_shape=True)
    with pytest.raises(InferenceError) as info:
        _diffuser(engine, prompt_provider, codec).run(
            sd_model, PromptOptions(), SchedulerOptions(seed=1, inference_steps=2, **SMALL)
        )
    assert info.value.tensor_name == 'out_sample'


def test_scheduler_disposed_on_every_exit(prompt_provider, codec, sd_model, monkeypatch):
    created = []

    def tracking_get_scheduler(scheduler_type, generator=None):
        scheduler = get_scheduler(scheduler_type, generator)
        created.append(scheduler)
        return scheduler

    monkeypatch.setattr(pipelines, 'get_scheduler', tracking_get_scheduler)
    options = SchedulerOptions(seed=3, inference_steps=3, **SMALL)

    _diffuser(FakeEngine(), prompt_provider, codec).run(sd_model, PromptOptions(), options)
    with pytest.raises(InferenceError):
        _diffuser(FakeEngine(fail_component='vae_decoder'), prompt_provider, codec).run(
            sd_model, PromptOptions(), options
        )
    token = CancellationToken()
    token.cancel()
    with pytest.raises(DiffusionCancelled):
        _diffuser(FakeEngine(), prompt_provider, codec).run(
            sd_model, PromptOptions(), options, cancellation=token
        )

    assert len(created) == 3
    assert all(s.is_disposed for s in created)


def test_unsupported_combinations(engine, prompt_provider, codec):
    with pytest.raises(ValueError):
        _diffuser(engine, prompt_provider, codec, DiffuserType.IMAGE_INPAINT,
                  PipelineType.LATENT_CONSISTENCY)
    lcm = latent_consistency('lcm')
    diffuser = _diffuser(engine, prompt_provider, codec, DiffuserType.CONTROLNET,
                         PipelineType.LATENT_CONSISTENCY)
    with pytest.raises(ValueError):
        diffuser.run(lcm, _image_prompt(DiffuserType.CONTROLNET, control=True),
                     SchedulerOptions(seed=1, **SMALL))
    assert engine.calls == []


def test_pipeline_support_matrix():
    assert set(PIPELINE_DIFFUSERS[PipelineType.STABLE_DIFFUSION]) == set(DiffuserType)
    for pipeline_type in (PipelineType.STABLE_DIFFUSION_XL, PipelineType.LATENT_CONSISTENCY,
                          PipelineType.LATENT_CONSISTENCY_XL):
        assert DiffuserType.IMAGE_INPAINT not in PIPELINE_DIFFUSERS[pipeline_type]
        assert DiffuserType.IMAGE_INPAINT_LEGACY in PIPELINE_DIFFUSERS[pipeline_type]


# ═════════════════════════════════════════════════════════════════════
#  Image to image
# ═════════════════════════════════════════════════════════════════════

@pytest.mark.parametrize('strength, expected_steps', [(1.0, 10), (0.5, 5), (0.25, 2)])
def test_strength_selects_schedule_tail(engine, prompt_provider, codec, sd_model,
                                        strength, expected_steps):
    events = []
    options = SchedulerOptions(seed=9, inference_steps=10, strength=strength,
                               scheduler_type=SchedulerType.DDIM, **SMALL)
    diffuser = _diffuser(engine, prompt_provider, codec, DiffuserType.IMAGE_TO_IMAGE)
    result = diffuser.run(sd_model, _image_prompt(DiffuserType.IMAGE_TO_IMAGE), options,
                          events.append)

    full = get_scheduler(SchedulerType.DDIM)
    tail = full.initialize(options)[10 - expected_steps:]
    assert [e.timestep for e in events] == tail
    assert len(engine.calls_to('unet')) == expected_steps
    assert len(engine.calls_to('vae_encoder')) == 1
    assert result.steps == expected_steps


def test_zero_strength_is_rejected_before_inference(engine, prompt_provider, codec, sd_model):
    options = SchedulerOptions(seed=9, inference_steps=10, strength=0.0, **SMALL)
    diffuser = _diffuser(engine, prompt_provider, codec, DiffuserType.IMAGE_TO_IMAGE)
    with pytest.raises(ValueError):
        diffuser.run(sd_model, _image_prompt(DiffuserType.IMAGE_TO_IMAGE), options)
    assert engine.calls == []
    assert prompt_provider.calls == []


def test_strength_counts_substeps_for_second_order(engine, prompt_provider, codec, sd_model):
    options = SchedulerOptions(seed=9, inference_steps=10, strength=0.5,
                               scheduler_type=SchedulerType.KDPM2, **SMALL)
    diffuser = _diffuser(engine, prompt_provider, codec, DiffuserType.IMAGE_TO_IMAGE)
    result = diffuser.run(sd_model, _image_prompt(DiffuserType.IMAGE_TO_IMAGE), options)
    assert result.steps == 2 * 10 - 1 - 10


def test_image_to_image_requires_image(engine, prompt_provider, codec, sd_model):
    diffuser = _diffuser(engine, prompt_provider, codec, DiffuserType.IMAGE_TO_IMAGE)
    with pytest.raises(ValueError):
        diffuser.run(sd_model, PromptOptions(diffuser_type=DiffuserType.IMAGE_TO_IMAGE),
                     SchedulerOptions(seed=1, **SMALL))
    assert engine.calls == []


# ═════════════════════════════════════════════════════════════════════
#  Inpainting
# ═════════════════════════════════════════════════════════════════════

def _legacy_options():
    return SchedulerOptions(seed=21, inference_steps=8, strength=0.75,
                            scheduler_type=SchedulerType.DDIM, **SMALL)


def test_legacy_full_mask_matches_image_to_image(prompt_provider, codec, sd_model):
    options = _legacy_options()
    legacy = _diffuser(FakeEngine(), prompt_provider, codec, DiffuserType.IMAGE_INPAINT_LEGACY)
    img2img = _diffuser(FakeEngine(), prompt_provider, codec, DiffuserType.IMAGE_TO_IMAGE)

    masked = legacy.run(sd_model, _image_prompt(DiffuserType.IMAGE_INPAINT_LEGACY, 1.0), options)
    plain = img2img.run(sd_model, _image_prompt(DiffuserType.IMAGE_TO_IMAGE), options)
    assert masked.latents == plain.latents


def test_legacy_empty_mask_keeps_renoised_original(prompt_provider, codec, sd_model):
    options = _legacy_options()
    engine = FakeEngine()
    legacy = _diffuser(engine, prompt_provider, codec, DiffuserType.IMAGE_INPAINT_LEGACY)
    events = []
    result = legacy.run(sd_model, _image_prompt(DiffuserType.IMAGE_INPAINT_LEGACY, 0.0),
                        options, events.append)

    pixels = engine.calls_to('vae_encoder')[0].inputs['sample']
    encoded = FakeEngine().run('sd15/vae_encoder', {'sample': pixels})['latent_sample']
    original = encoded.multiply_by(sd_model.scale_factor)
    noise = randn_tensor(original.shape, np.random.default_rng(options.seed))

    scheduler = get_scheduler(SchedulerType.DDIM)
    scheduler.initialize(options)
    expected = scheduler.add_noise(original, noise, [events[-1].timestep])
    np.testing.assert_allclose(result.latents.numpy(), expected.numpy(), rtol=1e-6, atol=1e-6)


def test_inpaint_feeds_nine_channels(engine, prompt_provider, codec, sd_model):
    options = SchedulerOptions(seed=4, inference_steps=3, guidance_scale=5.0, **SMALL)
    diffuser = _diffuser(engine, prompt_provider, codec, DiffuserType.IMAGE_INPAINT)
    result = diffuser.run(sd_model, _image_prompt(DiffuserType.IMAGE_INPAINT, 1.0), options)

    unet_calls = engine.calls_to('unet')
    assert len(unet_calls) == 3
    assert all(c.shape('sample') == (2, 9, 8, 8) for c in unet_calls)
    assert len(engine.calls_to('vae_encoder')) == 1
    assert result.latents.shape == (1, 4, 8, 8)


def test_inpaint_requires_mask(engine, prompt_provider, codec, sd_model):
    diffuser = _diffuser(engine, prompt_provider, codec, DiffuserType.IMAGE_INPAINT)
    with pytest.raises(ValueError):
        diffuser.run(sd_model, _image_prompt(DiffuserType.IMAGE_INPAINT),
                     SchedulerOptions(seed=1, **SMALL))


# ═════════════════════════════════════════════════════════════════════
#  ControlNet
# ═════════════════════════════════════════════════════════════════════

def test_controlnet_runs_controlnet_graph(engine, prompt_provider, codec, sd_model):
    options = SchedulerOptions(seed=4, inference_steps=3, guidance_scale=5.0,
                               conditioning_scale=0.8, **SMALL)
    diffuser = _diffuser(engine, prompt_provider, codec, DiffuserType.CONTROLNET)
    diffuser.run(sd_model, _image_prompt(DiffuserType.CONTROLNET, control=True), options)

    assert engine.calls_to('unet') == []
    calls = engine.calls_to('controlnet')
    assert len(calls) == 3
    assert calls[0].model_id == 'sd15/controlnet'
    assert calls[0].shape('controlnet_cond') == (2, 3, 64, 64)
    assert calls[0].inputs['conditioning_scale'].item() == pytest.approx(0.8)


def test_controlnet_image_uses_strength(engine, prompt_provider, codec, sd_model):
    options = SchedulerOptions(seed=4, inference_steps=6, strength=0.5, guidance_scale=1.0,
                               scheduler_type=SchedulerType.EULER, **SMALL)
    diffuser = _diffuser(engine, prompt_provider, codec, DiffuserType.CONTROLNET_IMAGE)
    result = diffuser.run(sd_model, _image_prompt(DiffuserType.CONTROLNET_IMAGE, control=True),
                          options)
    assert result.steps == 3
    assert engine.calls_to('controlnet')[0].shape('controlnet_cond') == (1, 3, 64, 64)


# ═════════════════════════════════════════════════════════════════════
#  Pipeline families
# ═════════════════════════════════════════════════════════════════════

def test_sdxl_adds_pooled_embeds_and_time_ids(engine, prompt_provider, codec):
    model = stable_diffusion_xl('sdxl')
    options = SchedulerOptions(seed=2, inference_steps=2, guidance_scale=5.0, width=64, height=128)
    _diffuser(engine, prompt_provider, codec, pipeline_type=PipelineType.STABLE_DIFFUSION_XL).run(
        model, PromptOptions(prompt='x'), options
    )
    call = engine.calls_to('unet')[0]
    assert call.shape('sample') == (2, 4, 16, 8)
    assert call.shape('text_embeds') == (2, 16)
    assert call.shape('time_ids') == (2, 6)
    assert call.inputs['time_ids'].numpy()[0].tolist() == [128, 64, 0, 0, 128, 64]


def test_sdxl_refiner_uses_aesthetic_score(engine, prompt_provider, codec):
    model = stable_diffusion_xl('refiner', model_type=ModelType.REFINER)
    options = SchedulerOptions(seed=2, inference_steps=2, guidance_scale=1.0,
                               aesthetic_score=6.5, **SMALL)
    _diffuser(engine, prompt_provider, codec, pipeline_type=PipelineType.STABLE_DIFFUSION_XL).run(
        model, PromptOptions(prompt='x'), options
    )
    time_ids = engine.calls_to('unet')[0].inputs['time_ids']
    assert time_ids.shape == (1, 5)
    assert time_ids.numpy()[0, -1] == pytest.approx(6.5)


def test_lcm_never_guides(engine, prompt_provider, codec):
    model = latent_consistency('lcm')
    options = SchedulerOptions(seed=2, inference_steps=4, guidance_scale=8.0,
                               scheduler_type=SchedulerType.LCM, **SMALL)
    _diffuser(engine, prompt_provider, codec, pipeline_type=PipelineType.LATENT_CONSISTENCY).run(
        model, PromptOptions(prompt='x'), options
    )
    calls = engine.calls_to('unet')
    assert len(calls) == 4
    assert all(c.shape('sample') == (1, 4, 8, 8) for c in calls)
    assert calls[0].shape('timestep_cond') == (1, 256)
    assert [c.inputs['timestep'].item() for c in calls] == [999, 759, 519, 279]
    assert prompt_provider.calls == [False]


def test_timestep_input_is_int64(engine, prompt_provider, codec, sd_model):
    _diffuser(engine, prompt_provider, codec).run(
        sd_model, PromptOptions(), SchedulerOptions(seed=1, inference_steps=2, **SMALL)
    )
    timestep = engine.calls_to('unet')[0].inputs['timestep']
    assert isinstance(timestep, Tensor)
    assert timestep.dtype == np.int64
    assert timestep.shape == (1,)


def test_cancellation_after_last_step_skips_decode(engine, prompt_provider, codec, sd_model):
    token = CancellationToken()

    def on_progress(progress):
        if progress.step == progress.total:
            token.cancel()

    options = SchedulerOptions(seed=5, inference_steps=4, **SMALL)
    with pytest.raises(DiffusionCancelled) as info:
        _diffuser(engine, prompt_provider, codec).run(
            sd_model, PromptOptions(), options, on_progress, token
        )
    assert info.value.completed_steps == 4
    assert engine.calls_to('vae_decoder') == []
