"""
Example serving several users from one loaded model.

Each worker thread leases its own session, streams a reply, and releases
the session. With max_concurrent_sessions=2 the third worker waits in the
lease queue until a slot frees up. Pass the path of a local .gguf model.
"""

import sys
import threading

from llm_runtime_lite import InferenceEngine, RuntimeConfig, SamplingParams

if len(sys.argv) != 2:
    sys.exit("usage: python session_pool_example.py MODEL.gguf")

config = RuntimeConfig(max_concurrent_sessions=2, lease_timeout_ms=120_000)
engine = InferenceEngine(config=config, setup_logging=True)

print("Resolving and loading model...")
asset = engine.resolve_asset(sys.argv[1])
print(f"  {asset.name} ({asset.quantization or 'unknown quantization'}, {asset.size_bytes} bytes)")
engine.load_runtime(asset)

prompts = [
    "What is the capital of France?",
    "Name three prime numbers.",
    "Why is the sky blue?",
]
outputs = {}


def answer(prompt: str) -> None:
    session = engine.lease_session()
    try:
        pieces = engine.stream_text(
            session, prompt, max_tokens=64, sampling=SamplingParams(temperature=0.7, seed=0)
        )
        outputs[prompt] = "".join(pieces).strip()
    finally:
        engine.release_session(session)


print("\nGenerating...")
workers = [threading.Thread(target=answer, args=(p,)) for p in prompts]
for w in workers:
    w.start()
for w in workers:
    w.join()

for prompt, reply in outputs.items():
    print(f"\nUser: {prompt}")
    print(f"Assistant: {reply}")

# Show health and memory
health = engine.get_health()
stats = engine.get_memory_stats()
print("\nHealth:")
print(f"  Runtime state: {health.runtime_state.value}")
print(f"  Recommendation: {health.recommendation.value}")
print(f"  Model memory: {stats['model_bytes'] / 1024**2:.1f} MiB")
print(f"  Total leases: {stats['sessions']['total_leases']}")

engine.dispose()
