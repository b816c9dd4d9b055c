#!/usr/bin/env python3
"""Example script demonstrating LFM-Audio usage.

Usage:
    # Speech synthesis
    python scripts/example.py tts --text "Hello world" -o hello.wav

    # Speech recognition (any WAV, resampled to 16 kHz)
    python scripts/example.py asr --input speech.wav

    # Interleaved answer to a spoken question
    python scripts/example.py interleaved --input question.wav -o answer.wav

    # Text chat, several turns on one conversation
    python scripts/example.py chat --text "Hi!" --text "Tell me a joke."
"""

import argparse
import logging
import sys
from pathlib import Path

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)


def load_input(engine, path: Path):
    """Read a 16-bit WAV and resample it to the encoder rate."""
    from lfm_audio.utils.audio import AudioProcessor

    processor = AudioProcessor()
    audio, sr = processor.read_wav(path.read_bytes())
    return processor.resample(audio, sr, engine.input_sample_rate)


def save_output(engine, frames, output: Path) -> None:
    audio = engine.decode_audio_codes(frames)
    if audio.size == 0:
        logger.warning("No audio generated")
        return
    output.write_bytes(engine.to_wav_bytes(audio))
    logger.info("Saved: %s (%.1fs audio)", output, len(audio) / engine.sample_rate)


def print_token(text: str, token: int) -> None:
    sys.stdout.write(f"\r{text}")
    sys.stdout.flush()


def main():
    parser = argparse.ArgumentParser(
        description="LFM-Audio example",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("mode", choices=["tts", "asr", "interleaved", "chat"])
    parser.add_argument(
        "--text",
        type=str,
        action="append",
        help="Text input; repeat for several chat turns",
    )
    parser.add_argument("--input", "-i", type=Path, help="Input WAV file (asr, interleaved)")
    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        default=Path("output.wav"),
        help="Output WAV file path (default: output.wav)",
    )
    parser.add_argument("--model-dir", type=Path, help="Local export directory")
    parser.add_argument(
        "--device",
        type=str,
        default="cpu",
        choices=["cpu", "cuda"],
        help="Device to use (default: cpu)",
    )
    parser.add_argument("--seed", type=int, default=None, help="Sampling seed")
    parser.add_argument("--max-tokens", type=int, default=None, help="Step budget per turn")
    args = parser.parse_args()

    if args.mode in ("tts", "chat") and not args.text:
        parser.error(f"--text is required for {args.mode}")
    if args.mode in ("asr", "interleaved") and not args.input:
        parser.error(f"--input is required for {args.mode}")

    # Import here to show initialization time
    logger.info("Loading LFM-Audio...")
    from lfm_audio import GenerationConfig, LfmAudio, LoadConfig

    def on_progress(progress):
        logger.info("  [%3.0f%%] %s %s", progress.percent, progress.stage, progress.file_name)

    engine = LfmAudio(
        model_dir=args.model_dir,
        load_config=LoadConfig(device=args.device),
        progress_callback=on_progress,
        seed=args.seed,
    )
    overrides = {"max_new_tokens": args.max_tokens} if args.max_tokens else {}
    logger.info("Ready.")

    if args.mode == "tts":
        text = " ".join(args.text)
        logger.info("Text: %s", text[:80] + "..." if len(text) > 80 else text)
        result = engine.generate_speech(text, config=GenerationConfig.tts(**overrides))
        logger.info("%d frames (%s)", len(result.audio_frames), result.stop_reason)
        save_output(engine, result.audio_frames, args.output)

    elif args.mode == "asr":
        audio = load_input(engine, args.input)
        text = engine.transcribe(
            audio, engine.input_sample_rate, config=GenerationConfig.asr(**overrides)
        )
        print(text)

    elif args.mode == "interleaved":
        audio = load_input(engine, args.input)
        prompt = " ".join(args.text or [])
        turn = engine.generate_interleaved(
            audio,
            engine.input_sample_rate,
            prompt=prompt,
            config=GenerationConfig.interleaved(**overrides),
            on_token=print_token,
        )
        print()
        logger.info("%d frames (%s)", len(turn.audio_frames), turn.stop_reason)
        save_output(engine, turn.audio_frames, args.output)

    else:
        for text in args.text:
            print(f"> {text}")
            engine.generate_text_only(
                text, config=GenerationConfig.chat(**overrides), on_token=print_token
            )
            print()
        engine.reset()


if __name__ == "__main__":
    main()
