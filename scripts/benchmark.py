#!/usr/bin/env python3
"""Benchmark script for LFM-Audio speech synthesis and transcription."""

import argparse
import time

import numpy as np


def benchmark(model_dir: str | None = None, device: str = "cpu", profile: bool = False):
    """Run benchmark with optional per-stage profiling."""
    from lfm_audio import GenerationConfig, LfmAudio, LoadConfig

    print("=" * 60)
    print("LFM-Audio Benchmark")
    print("=" * 60)
    print()

    print(f"Device: {device}")
    print("Initializing...")
    t0 = time.perf_counter()
    engine = LfmAudio(model_dir=model_dir, load_config=LoadConfig(device=device), seed=0)
    print(f"Init time: {time.perf_counter() - t0:.1f}s")
    print()

    # Warmup
    print("Warming up...")
    engine.generate_speech("Test", config=GenerationConfig.tts(max_new_tokens=16))
    print()

    tests = [
        ("Short", "Hello world!"),
        ("Medium", "The quick brown fox jumps over the lazy dog."),
        (
            "Long",
            "In a world where technology advances rapidly, artificial intelligence "
            "has emerged as a transformative force reshaping how we live and work.",
        ),
    ]

    print("Synthesis Benchmark:")
    print("-" * 60)

    total_audio = 0.0
    total_time = 0.0
    last_audio = None

    for name, text in tests:
        t0 = time.perf_counter()
        result = engine.generate_speech(text)
        audio = engine.decode_audio_codes(result.audio_frames)
        elapsed = time.perf_counter() - t0

        audio_duration = len(audio) / engine.sample_rate
        rtf = elapsed / audio_duration if audio_duration > 0 else 0

        total_audio += audio_duration
        total_time += elapsed
        last_audio = audio

        print(
            f"{name:8s}: {len(text):3d} chars -> {len(result.audio_frames):4d} frames, "
            f"{audio_duration:5.1f}s audio in {elapsed:5.2f}s (RTF={rtf:.3f})"
        )

    avg_rtf = total_time / total_audio if total_audio > 0 else 0
    print("-" * 60)
    print(f"Average RTF: {avg_rtf:.3f}")
    print()

    if profile:
        print("Detailed Profiling (Long text):")
        print("-" * 60)
        profile_synthesis(engine, tests[2][1])
        print()

    # Transcribe the synthesized speech back
    if last_audio is not None and last_audio.size:
        from lfm_audio.utils.audio import AudioProcessor

        print("Transcription Benchmark:")
        print("-" * 60)
        audio_16k = AudioProcessor().resample(last_audio, engine.sample_rate, engine.input_sample_rate)
        t0 = time.perf_counter()
        text = engine.transcribe(audio_16k, engine.input_sample_rate)
        elapsed = time.perf_counter() - t0
        print(f"{len(audio_16k) / engine.input_sample_rate:.1f}s audio in {elapsed:.2f}s: {text!r}")
        print()

    print("=" * 60)


def profile_synthesis(engine, text: str):
    """Time each audio frame and the waveform decode separately."""
    from lfm_audio import GenerationConfig

    frame_times = []
    t_last = time.perf_counter()

    def on_frame(frame, count):
        nonlocal t_last
        t_now = time.perf_counter()
        frame_times.append(t_now - t_last)
        t_last = t_now

    t_gen_start = time.perf_counter()
    result = engine.generate_speech(text, config=GenerationConfig.tts(), on_audio_frame=on_frame)
    gen_time = time.perf_counter() - t_gen_start

    t_voc_start = time.perf_counter()
    engine.decode_audio_codes(result.audio_frames)
    vocoder_time = time.perf_counter() - t_voc_start

    total_time = gen_time + vocoder_time
    frames_per_sec = len(result.audio_frames) / gen_time if gen_time > 0 else 0

    print(f"Frame generation: {gen_time:.2f}s ({len(result.audio_frames)} frames, {frames_per_sec:.1f} frames/s)")
    print(f"Waveform decode:  {vocoder_time:.2f}s")
    print(f"Total:            {total_time:.2f}s")
    if total_time > 0:
        print(f"Gen/Total ratio:  {gen_time / total_time * 100:.1f}%")

    if len(frame_times) > 10:
        # Skip the first frames, they include the text part of the turn
        print(f"Avg frame time:   {np.mean(frame_times[5:]) * 1000:.1f}ms (after warmup)")


def main():
    parser = argparse.ArgumentParser(description="Benchmark LFM-Audio")
    parser.add_argument("--model-dir", default=None, help="Local export directory")
    parser.add_argument("--device", default="cpu", choices=["cpu", "cuda"])
    parser.add_argument("--profile", action="store_true", help="Enable detailed profiling")
    args = parser.parse_args()

    benchmark(model_dir=args.model_dir, device=args.device, profile=args.profile)


if __name__ == "__main__":
    main()
