"""
Token-level generation CLI.

There is no tokenizer in this package: prompts and outputs are GPT-2 BPE
token ids. Encode/decode them with any GPT-2 tokenizer.

USAGE:
    # Pretrained weights (directory with config.json + pytorch_model.bin)
    python scripts/generate_text.py --model-dir gpt-neo-125M \
        --ids "7454 2402 257 640"

    # Interactive mode (type space-separated ids, get continuations)
    python scripts/generate_text.py --model-dir gpt-neo-125M

    # Randomly initialized model from a config file, beam search
    python scripts/generate_text.py --config tiny_config.json --seed 0 \
        --ids "1 2 3" --num-beams 4 --max-new-tokens 10

WHAT THIS SCRIPT DOES:
    1. Loads a model (pretrained directory, or random init from a config)
    2. Parses prompts given as token ids
    3. Runs greedy, sampled or beam decoding with the KV cache
    4. Prints the generated ids with timing information
"""

import os
import sys
import argparse
from typing import List

import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gpt_neo.config import GPTNeoConfig, GenerateConfig
from gpt_neo.model import GPTNeoForCausalLM
from gpt_neo.generate import generate_batch
from gpt_neo.device import device_info, estimate_kv_cache_mb, get_device, get_dtype
from gpt_neo.utils import (
    GenerationLogger,
    count_parameters,
    from_pretrained,
    print_model_summary,
    set_seed,
)


def build_model(
    args: argparse.Namespace,
    device: torch.device,
    logger: GenerationLogger,
) -> GPTNeoForCausalLM:
    """Load pretrained weights, or build a randomly initialized model."""
    if args.model_dir:
        logger.log_info(f"Loading model from: {args.model_dir}")
        model = from_pretrained(args.model_dir, device)
    else:
        config = GPTNeoConfig.load(args.config) if args.config else GPTNeoConfig()
        logger.log_info(
            f"Random init ({'defaults' if not args.config else args.config}), "
            f"seed {args.seed}"
        )
        set_seed(args.seed)
        model = GPTNeoForCausalLM(config).to(device)
        model.eval()
        logger.log_info(f"Parameters: {count_parameters(model):,}")

    dtype = get_dtype(args.dtype, device)
    return model.to(dtype)


def parse_ids(text: str) -> List[int]:
    return [int(tok) for tok in text.split()]


def run_prompt(
    model: GPTNeoForCausalLM,
    prompt_ids: List[int],
    gen_config: GenerateConfig,
    logger: GenerationLogger,
) -> None:
    result = generate_batch(model, [prompt_ids], gen_config, logger)
    new_ids = result.new_tokens()[0].tolist()
    print(f"\nprompt   : {prompt_ids}")
    print(f"generated: {new_ids}")
    if result.scores is not None:
        print(f"score    : {result.scores[0].item():.4f}")
    logger.log_result(result)


def interactive_loop(
    model: GPTNeoForCausalLM,
    gen_config: GenerateConfig,
    logger: GenerationLogger,
) -> None:
    """Read space-separated token ids from stdin until 'quit'."""
    print("\n" + "=" * 60)
    print("Interactive Generation (token ids)")
    print("=" * 60)
    print(f"Max new tokens: {gen_config.max_new_tokens}")
    print(f"Sampling: {gen_config.do_sample}  Beams: {gen_config.num_beams}")
    print("\nType space-separated token ids and press Enter. Type 'quit' to exit.")
    print("=" * 60 + "\n")

    while True:
        try:
            line = input(">>> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nGoodbye!")
            break

        if not line:
            continue
        if line.lower() == "quit":
            print("Goodbye!")
            break
        try:
            prompt_ids = parse_ids(line)
        except ValueError:
            print("Prompts must be integers separated by spaces.")
            continue

        run_prompt(model, prompt_ids, gen_config, logger)


def main():
    parser = argparse.ArgumentParser(
        description="Generate token ids with a GPT-Neo model",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--model-dir", type=str, default=None,
        help="Directory with config.json and pytorch_model.bin"
    )
    source.add_argument(
        "--config", type=str, default=None,
        help="Model config JSON for a randomly initialized model"
    )
    parser.add_argument(
        "--seed", type=int, default=42,
        help="Seed for random init and sampling"
    )
    parser.add_argument(
        "--device", type=str, default="auto",
        help="Device (auto, cpu, cuda, cuda:N, mps)"
    )
    parser.add_argument(
        "--dtype", type=str, default="float32",
        choices=["auto", "float16", "bfloat16", "float32"],
        help="Weight dtype"
    )
    parser.add_argument(
        "--ids", type=str, default=None,
        help="Prompt as space-separated token ids (if not provided, enters interactive mode)"
    )
    parser.add_argument(
        "--max-new-tokens", type=int, default=20,
        help="Maximum number of tokens to generate"
    )
    parser.add_argument(
        "--temperature", type=float, default=0.0,
        help="Sampling temperature (0=greedy)"
    )
    parser.add_argument(
        "--top-k", type=int, default=0,
        help="Top-k sampling (0=disabled)"
    )
    parser.add_argument(
        "--top-p", type=float, default=1.0,
        help="Top-p (nucleus) sampling threshold"
    )
    parser.add_argument(
        "--num-beams", type=int, default=1,
        help="Beam width (1=no beam search)"
    )
    parser.add_argument(
        "--log-dir", type=str, default=None,
        help="Directory for per-step generation logs"
    )
    parser.add_argument(
        "--log-interval", type=int, default=1,
        help="Log every N decoding steps"
    )
    parser.add_argument(
        "--summary", action="store_true",
        help="Print the per-component parameter summary"
    )

    args = parser.parse_args()
    logger = GenerationLogger(log_dir=args.log_dir, log_interval=args.log_interval)

    try:
        device = get_device(args.device)
        logger.log_info(device_info(device))

        model = build_model(args, device, logger)
        if args.summary:
            print_model_summary(model)
        kv_mb = estimate_kv_cache_mb(
            model.config,
            args.num_beams,
            model.config.max_position_embeddings,
            next(model.parameters()).dtype,
        )
        logger.log_info(f"KV cache at full context: {kv_mb:.1f} MB")

        gen_config = GenerateConfig(
            max_new_tokens=args.max_new_tokens,
            do_sample=args.temperature > 0,
            temperature=args.temperature if args.temperature > 0 else 1.0,
            top_k=args.top_k,
            top_p=args.top_p,
            num_beams=args.num_beams,
            seed=args.seed,
        )

        if args.ids:
            run_prompt(model, parse_ids(args.ids), gen_config, logger)
        else:
            interactive_loop(model, gen_config, logger)
    finally:
        logger.close()


if __name__ == "__main__":
    main()
