import numpy as np
from typing import List, Sequence, Tuple
from mnemos.models.memory import Memory

def cosine_similarity(v1: np.ndarray, v2: np.ndarray) -> float:
    denom = np.linalg.norm(v1) * np.linalg.norm(v2)
    if denom == 0:
        return 0.0
    return float(np.dot(v1, v2) / denom)

def batch_cosine_similarity(query_vec: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """
    Compute cosine similarity between query_vec and all rows in matrix.
    query_vec: (d,)
    matrix: (n, d)
    Returns: (n,) scores
    """
    norm_q = np.linalg.norm(query_vec)
    norm_m = np.linalg.norm(matrix, axis=1)

    # Avoid div by zero
    norm_product = norm_q * norm_m
    norm_product[norm_product == 0] = 1e-9

    dot_products = np.dot(matrix, query_vec)
    return dot_products / norm_product

def score_memories(
    query_embedding: Sequence[float],
    memories: List[Memory],
) -> Tuple[dict[int, float], List[Memory]]:
    """
    Cosine-score every memory whose stored vector matches the query dimensions.
    Returns (scores by memory id, memories left unscored).
    """
    query_vec = np.array(query_embedding, dtype=np.float32)

    matrix_list = []
    scored = []
    unscored = []
    for memory in memories:
        vec = memory.get_embedding()
        if vec is not None and vec.shape[0] == query_vec.shape[0]:
            matrix_list.append(vec)
            scored.append(memory)
        else:
            unscored.append(memory)

    if not matrix_list:
        return {}, unscored

    scores = batch_cosine_similarity(query_vec, np.array(matrix_list))
    return {m.id: float(s) for m, s in zip(scored, scores)}, unscored
