# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import multiprocessing
import os
import tempfile

import dnninfer
import numpy as np

world_size = 2
widths = [8, 64, 32, 4]
num_samples = [1000, 0, 250]


def write_model(model_dir):
    """Write a random three-slot model to `model_dir`."""
    rng = np.random.default_rng(0)
    setting = {
        "layers": widths,
        "model": [
            {
                "layer": {
                    "type": "Linear" if i == len(widths) - 2 else "LinearGELU",
                    "in_features": widths[i],
                    "out_features": widths[i + 1],
                }
            }
            for i in range(len(widths) - 1)
        ],
    }
    params = {
        slot: [
            (
                rng.standard_normal((b, a)).astype(np.float32) / np.sqrt(a),
                rng.standard_normal(b).astype(np.float32),
            )
            for a, b in zip(widths[:-1], widths[1:])
        ]
        for slot in range(dnninfer.NUM_SLOTS)
    }
    dnninfer.save_model(model_dir, setting, params)


def inference_function(rank, model_dir, store, np_inputs):
    print("rank:", rank)
    dnninfer.init()
    dnninfer.init_process_group(
        rank=rank, world_size=world_size, init_method=f"file://{store}"
    )

    # Only rank 0 reads the files; the other ranks receive the models
    engine = dnninfer.InferenceEngine(batch_size=128)
    engine.load_models(model_dir)

    # Slot 1 has no samples and is skipped
    outputs = engine.infer(num_samples, np_inputs)
    for slot, output in enumerate(outputs):
        if output is None:
            print("rank:", rank, "slot:", slot, "skipped")
            continue
        output = output.reshape(num_samples[slot], engine.output_dim)
        print("rank:", rank, "slot:", slot, "output[0]:", output[0])

    engine.close()
    dnninfer.destroy_process_group()
    print("rank:", rank, "done")


def multi_rank_inference():
    model_dir = tempfile.mkdtemp(prefix="dnninfer_tutorial_")
    write_model(model_dir)
    store = os.path.join(model_dir, "store")
    rng = np.random.default_rng(1)
    np_inputs = [
        rng.standard_normal(n * widths[0]).astype(np.float32)
        if n > 0
        else None
        for n in num_samples
    ]

    # Create a process for each rank
    processes = []
    for i in range(world_size):
        process = multiprocessing.Process(
            target=inference_function, args=(i, model_dir, store, np_inputs)
        )
        process.start()
        processes.append(process)

    # Join the processes after completion
    for process in processes:
        process.join()


if __name__ == "__main__":
    multi_rank_inference()
