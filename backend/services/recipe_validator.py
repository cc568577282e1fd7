"""Structural validation of recipes before scheduling or layout."""

from models.recipe_model import Recipe


def validate_connections(recipe: Recipe) -> list[str]:
    """Validate edges and sub-step ordering of a Recipe.

    Returns a list of error messages. An empty list means the recipe is valid.
    """
    errors: list[str] = []
    process_ids = {p.id for p in recipe.processes}

    # Track seen edges for duplicate detection
    seen_edges: set[tuple[str, str]] = set()

    for edge in recipe.edges:
        if edge.source not in process_ids:
            errors.append(f"Edge '{edge.id}': source '{edge.source}' not found")
            continue
        if edge.target not in process_ids:
            errors.append(f"Edge '{edge.id}': target '{edge.target}' not found")
            continue

        if edge.source == edge.target:
            errors.append(f"Edge '{edge.id}': process '{edge.source}' cannot feed itself")
            continue

        pair = (edge.source, edge.target)
        if pair in seen_edges:
            errors.append(
                f"Edge '{edge.id}': duplicate connection from "
                f"'{edge.source}' to '{edge.target}'"
            )
        else:
            seen_edges.add(pair)

    for process in recipe.processes:
        orders = sorted(s.order for s in process.sub_steps)
        if orders != list(range(1, len(orders) + 1)):
            errors.append(
                f"Process '{process.id}': sub-step orders {orders} are not 1..{len(orders)}"
            )

    return errors


def find_connection_warnings(recipe: Recipe) -> list[str]:
    """Return non-blocking warnings: isolated processes and extra convergence points."""
    warnings: list[str] = []

    if len(recipe.processes) > 1:
        sources = {e.source for e in recipe.edges}
        targets = {e.target for e in recipe.edges}
        for process in recipe.processes:
            if process.id not in sources and process.id not in targets:
                warnings.append(
                    f"Process '{process.name}' ({process.id}) has no connections"
                )

    in_degree: dict[str, int] = {}
    for edge in recipe.edges:
        in_degree[edge.target] = in_degree.get(edge.target, 0) + 1
    convergence = [p.id for p in recipe.processes if in_degree.get(p.id, 0) > 1]
    if len(convergence) > 1:
        warnings.append(
            f"Multiple convergence points ({', '.join(convergence)}); "
            f"only '{convergence[0]}' is used for parallel/serial layout"
        )

    return warnings
