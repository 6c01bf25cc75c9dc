#!/usr/bin/env python
"""
Example: Linear-Chain CRF Segmentation

Demonstrates basic usage of the toolkit.
"""

from chaincrf import (
    CRFSegmenter,
    FeatureExtractor,
    LinearChainCRF,
    to_graphemes,
    segments_to_labels,
    print_evaluation_summary
)


def main():
    print("=" * 60)
    print("Linear-Chain CRF Segmentation Demo")
    print("=" * 60)

    samples = [
        {"text": "rikuchkani", "segments": ["riku", "chka", "ni"]},
        {"text": "wasiypi", "segments": ["wasi", "y", "pi"]},
        {"text": "llamkashanku", "segments": ["llamka", "sha", "nku"]},
        {"text": "pikunas", "segments": ["pi", "kuna", "s"]},
        {"text": "wasikuna", "segments": ["wasi", "kuna"]},
        {"text": "rikuni", "segments": ["riku", "ni"]},
    ]

    # Step 1: Graphemes and labels
    print("\n1. Graphemes and B/I Labels")
    print("-" * 40)
    for sample in samples[:2]:
        chars = to_graphemes(sample["text"])
        labels = segments_to_labels(chars, sample["segments"])
        print(f"  {sample['text']} → {list(zip(chars, labels))}")

    # Step 2: Features
    print("\n2. Features")
    print("-" * 40)
    extractor = FeatureExtractor(window_size=2)
    chars, features = extractor.extract_sequence("wasiypi")
    print(f"  Position 4 ({chars[4]}): {features[4][:8]}...")

    # Step 3: The bare CRF engine
    print("\n3. CRF Engine")
    print("-" * 40)
    crf = LinearChainCRF(learning_rate=0.5, max_iterations=200, regularization=0.01)
    history = crf.train([[["F1"], ["F2"]]], [["B", "I"]])
    print(f"  Iterations: {history['iterations']}, log-likelihood: {history['log_likelihood'][-1]:.4f}")
    print(f"  predict([[F1], [F2]]) → {crf.predict([['F1'], ['F2']])}")

    # Step 4: Segmenter
    print("\n4. Segmenter")
    print("-" * 40)
    segmenter = CRFSegmenter(learning_rate=0.2, max_iterations=150, window_size=2)
    segmenter.train(samples)
    for text in ["rikuchkani", "wasikunapi", "pikuna"]:
        print(f"  {text} → {segmenter.segment(text)}")

    # Step 5: Evaluation on the training data
    results = segmenter.evaluate(samples)
    print_evaluation_summary(results, name="Demo segmenter (training data)")

    print("=" * 60)
    print("Demo complete!")
    print("=" * 60)


if __name__ == "__main__":
    main()
