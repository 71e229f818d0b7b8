"""
Interactive config authoring

Walks the operator through creating a build config. When an API key is
available, the Hyperstack catalog (regions, images, flavors, keypairs,
environments) is offered as numbered menus; otherwise plain defaults are used.
"""

import logging
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

from .client import HyperstackClient
from .config import (
    DEFAULT_BASE_IMAGE,
    DEFAULT_FLAVOR,
    DEFAULT_IMAGE_NAME,
    DEFAULT_PRIVATE_KEY_PATH,
    DEFAULT_REGION,
    DEFAULT_TAGS,
    DEFAULT_VM_NAME,
    BuildConfig,
    default_image_version,
)
from .errors import BuildError

logger = logging.getLogger(__name__)

MENU_LIMIT = 10

Prompt = Callable[[str, str], str]
T = TypeVar("T")


def prompt_user(prompt: str, default: str = "") -> str:
    """Ask for a value on stdin, returning `default` for an empty answer."""
    if default:
        answer = input(f"{prompt} [{default}]: ")
    else:
        answer = input(f"{prompt}: ")

    answer = answer.strip()
    if not answer and default:
        return default
    return answer


def _select(choice: str, options: Sequence[T]) -> Optional[T]:
    """Map a 1-based menu answer to an option, None if it is not a valid number."""
    try:
        number = int(choice)
    except ValueError:
        return None
    if 0 < number <= len(options):
        return options[number - 1]
    return None


def _choose(
    prompt: Prompt,
    question: str,
    options: Sequence[T],
    default: str
) -> Tuple[Optional[T], str]:
    """
    Ask until the answer is an in-range menu number or a non-numeric custom value.

    Returns:
        The selected option (None for a custom value) and the raw answer
    """
    while True:
        choice = prompt(question, default)
        try:
            int(choice)
        except ValueError:
            return None, choice

        selected = _select(choice, options)
        if selected is not None:
            return selected, choice
        print(f"Invalid selection: {choice}. Enter 1-{len(options)} or a name.")


def _collect_tags(prompt: Prompt) -> List[str]:
    print("\nConfigure tags (simple labels):")
    tags = list(DEFAULT_TAGS)
    for tag in tags:
        print(f"Added: {tag}")

    print("\nAdd custom labels (just enter label names, empty line to finish):")
    while True:
        label = prompt("Custom label", "")
        if not label:
            break
        tags.append(label)
        print(f"Added: {label}")
    return tags


def _fetch(description: str, loader: Callable[[], List[T]]) -> List[T]:
    try:
        return loader()
    except BuildError as e:
        print(f"Warning: Could not fetch {description}: {e}")
        logger.warning(f"Could not fetch {description}: {e}")
        return []


def generate(prompt: Prompt = prompt_user) -> BuildConfig:
    """Create a config from defaults, without catalog lookups."""
    print("=== Hyperstack Image Builder Configuration ===")
    print("This will generate a config.json file for building Kubernetes GPU images.")
    print("(Using default values - API key not available for fetching options)")
    print()

    config = BuildConfig()
    config.image_name = prompt("Image name", DEFAULT_IMAGE_NAME)
    config.image_version = prompt("Image version", default_image_version())
    config.base_image_name = prompt("Base image name", DEFAULT_BASE_IMAGE)

    config.vm_name = prompt("Temporary VM name", DEFAULT_VM_NAME)
    config.flavor_name = prompt("VM flavor (GPU instance type)", DEFAULT_FLAVOR)
    config.keypair_name = prompt("SSH keypair name", "")
    config.private_key_path = prompt("Private key path for SSH access", DEFAULT_PRIVATE_KEY_PATH)
    config.environment_name = prompt("Environment name", "default")

    config.tags = _collect_tags(prompt)
    return config


def generate_with_api(client: HyperstackClient, prompt: Prompt = prompt_user) -> BuildConfig:
    """Create a config, offering what the account actually has as menus."""
    print("=== Hyperstack Image Builder Configuration ===")
    print("This will generate a config.json file for building Kubernetes GPU images.")
    print("Fetching available options from Hyperstack API...")
    print()

    images = _fetch("images", client.list_images)
    regions = _fetch("regions", client.list_regions)
    flavors = _fetch("flavors", client.list_flavors)
    keypairs = _fetch("keypairs", client.list_keypairs)
    environments = _fetch("environments", client.list_environments)

    config = BuildConfig()

    # Region
    region = DEFAULT_REGION
    if regions:
        print("Available regions:")
        default_choice = "1"
        for i, r in enumerate(regions, start=1):
            print(f"  {i}. {r.name} (ID: {r.id})")
            if r.name == DEFAULT_REGION:
                default_choice = str(i)

        selected, _ = _choose(prompt, f"Select region (1-{len(regions)})", regions, default_choice)
        region = selected.name if selected else DEFAULT_REGION
        print(f"Selected region: {region}\n")
    config.region = region

    config.image_name = prompt("Output image name", DEFAULT_IMAGE_NAME)
    config.image_version = prompt("Output image version", default_image_version())

    # Base image: k8s-labelled images in the region, else Ubuntu+Docker ones
    candidates = [
        img for img in images
        if img.region_name == region and img.has_label_containing(["k8s", "kubernetes"])
    ]
    if images:
        print(f"Available base images in {region} (k8s-compatible images):")
    if images and not candidates:
        print("No k8s-labeled images found, showing Ubuntu/Docker images:")
        candidates = [
            img for img in images
            if img.region_name == region
            and "ubuntu" in img.name.lower()
            and "docker" in img.name.lower()
        ]

    if candidates:
        for i, img in enumerate(candidates[:MENU_LIMIT], start=1):
            print(f"  {i}. {img.name} (Size: {img.size_gb:.1f}GB, Public: {img.is_public})")
        if len(candidates) > MENU_LIMIT:
            print(f"  ... (showing first {MENU_LIMIT})")
        selected_image, choice = _choose(
            prompt, f"Select base image (1-{len(candidates)}) or enter custom name", candidates, "1"
        )
        config.base_image_name = selected_image.name if selected_image else choice
    else:
        config.base_image_name = prompt("Base image name", DEFAULT_BASE_IMAGE)

    config.vm_name = prompt("Temporary VM name", DEFAULT_VM_NAME)

    # Flavor: GPU flavors in the region
    gpu_flavors = [f for f in flavors if f.gpu_count > 0 and f.region_name == region]
    if gpu_flavors:
        print(f"\nAvailable VM flavors in {region} (GPU instances):")
        for i, f in enumerate(gpu_flavors[:MENU_LIMIT], start=1):
            print(f"  {i}. {f.name} (CPU: {f.cpu}, RAM: {f.ram:.0f}GB, GPU: {f.gpu_count} {f.gpu})")
        if len(gpu_flavors) > MENU_LIMIT:
            print(f"  ... (showing first {MENU_LIMIT} GPU flavors)")
        selected_flavor, choice = _choose(
            prompt, f"Select flavor (1-{len(gpu_flavors)}) or enter custom name", gpu_flavors, "1"
        )
        config.flavor_name = selected_flavor.name if selected_flavor else choice
    else:
        config.flavor_name = prompt("VM flavor (GPU instance type)", DEFAULT_FLAVOR)

    # Keypair
    if keypairs:
        print("\nAvailable SSH keypairs:")
        for i, kp in enumerate(keypairs[:MENU_LIMIT], start=1):
            print(f"  {i}. {kp.name} (Environment: {kp.environment_name})")
        if len(keypairs) > MENU_LIMIT:
            print(f"  ... (showing first {MENU_LIMIT})")
        selected_keypair, choice = _choose(
            prompt, f"Select keypair (1-{len(keypairs)}) or enter custom name", keypairs, ""
        )
        if choice:
            config.keypair_name = selected_keypair.name if selected_keypair else choice
    else:
        config.keypair_name = prompt("SSH keypair name", "")

    config.private_key_path = prompt("Private key path for SSH access", DEFAULT_PRIVATE_KEY_PATH)

    # Environment: ones whose name mentions the region
    region_environments = [env for env in environments if region in env.name]
    if region_environments:
        print(f"\nAvailable environments in {region}:")
        for i, env in enumerate(region_environments, start=1):
            print(f"  {i}. {env.name} (ID: {env.id})")
        selected_env, choice = _choose(
            prompt,
            f"Select environment (1-{len(region_environments)}) or enter custom name",
            region_environments,
            "1"
        )
        config.environment_name = selected_env.name if selected_env else choice
    else:
        if environments:
            print("No environments found for this region, using default pattern")
        config.environment_name = f"default-{region}"

    config.tags = _collect_tags(prompt)
    return config
