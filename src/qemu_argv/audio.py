"""Audio backends and sound devices.

Audio is configured one of two ways per pass, never both: -audiodev objects
that sound devices reference by id, or the legacy QEMU_AUDIO_DRV family of
environment variables. select_audio_mode() makes that choice once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from qemu_argv import constants
from qemu_argv._logging import get_logger
from qemu_argv.addresses import AddressKind
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.device_common import device_label, finish_device, plain_device, require_address, require_alias
from qemu_argv.devices import AudioBackend, AudioStream, Codec, Sound
from qemu_argv.emitter import TreeKind
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.fragments import Fragment
from qemu_argv.props import PropRef, PropTree

if TYPE_CHECKING:
    from qemu_argv.domain import VmDefinition

logger = get_logger(__name__)


class AudioMode(StrEnum):
    """How audio backends reach the emulator."""

    AUDIODEV = "audiodev"
    ENVIRONMENT = "environment"


def select_audio_mode(caps: CapabilitySet) -> AudioMode:
    return AudioMode.AUDIODEV if caps.has(Cap.AUDIODEV) else AudioMode.ENVIRONMENT


def audio_alias(audio_id: int) -> str:
    return f"audio{audio_id}"


# QEMU driver names differ from the definition's for PulseAudio only.
_DRIVERS = {"pulseaudio": "pa"}


def audio_driver(backend: AudioBackend) -> str:
    return _DRIVERS.get(backend.type, backend.type)


def pc_speaker_audio_alias(vm: VmDefinition) -> str:
    speaker = next(s for s in vm.devices_of(Sound) if s.model == "pcspk")
    if speaker.audio_id is not None:
        return audio_alias(speaker.audio_id)
    return constants.DEFAULT_AUDIO_ALIAS


# ============================================================================
# Backends
# ============================================================================


def _stream_props(stream: AudioStream | None, backend: AudioBackend) -> PropTree | None:
    if stream is None:
        return None
    tree = PropTree()
    tree.add("mixing-engine", stream.mixing_engine)
    tree.add("fixed-settings", stream.fixed_settings)
    tree.add("voices", stream.voices)
    tree.add("buffer-length", stream.buffer_length)
    match backend.type:
        case "alsa" | "oss":
            tree.add("dev", stream.dev)
        case "pulseaudio" | "jack" | "pipewire":
            tree.add("name", stream.name)
        case _:
            pass
    return tree if len(tree) else None


def audiodev_props(backend: AudioBackend) -> PropTree:
    tree = PropTree.audiodev(audio_driver(backend), audio_alias(backend.id))
    tree.add("in", _stream_props(backend.input, backend))
    tree.add("out", _stream_props(backend.output, backend))
    tree.add("timer-period", backend.timer_period)
    match backend.type:
        case "pulseaudio":
            tree.add("server", backend.server)
        case "file":
            tree.add("path", backend.path)
        case _:
            pass
    return tree


_ENV_DRIVER = "QEMU_AUDIO_DRV"


def audio_environment(backend: AudioBackend | None) -> dict[str, str]:
    """Legacy environment for `backend`; "none" when nothing is configured."""
    if backend is None:
        return {_ENV_DRIVER: "none"}
    env = {_ENV_DRIVER: audio_driver(backend)}
    if backend.type == "pulseaudio" and backend.server:
        env["QEMU_PA_SERVER"] = backend.server
    if backend.type == "file" and backend.path:
        env["QEMU_WAV_PATH"] = backend.path
    if backend.type == "alsa" and backend.output is not None and backend.output.dev:
        env["QEMU_ALSA_DAC_DEV"] = backend.output.dev
    if backend.type == "alsa" and backend.input is not None and backend.input.dev:
        env["QEMU_ALSA_ADC_DEV"] = backend.input.dev
    return env


@dataclass
class AudioPlan:
    """Audio configuration for one pass: fragments or environment, not both."""

    mode: AudioMode
    fragments: list[Fragment] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


def plan_audio(vm: VmDefinition, caps: CapabilitySet) -> AudioPlan:
    backends = vm.devices_of(AudioBackend)
    mode = select_audio_mode(caps)
    plan = AudioPlan(mode)
    match mode:
        case AudioMode.AUDIODEV:
            for backend in backends:
                plan.fragments.append(Fragment.from_tree(audiodev_props(backend), caps, TreeKind.AUDIODEV))
            if not backends and vm.devices_of(Sound):
                # Sound devices always reference an audiodev; give them a silent one.
                tree = PropTree.audiodev("none", constants.DEFAULT_AUDIO_ALIAS)
                plan.fragments.append(Fragment.from_tree(tree, caps, TreeKind.AUDIODEV))
        case AudioMode.ENVIRONMENT:
            if len(backends) > 1:
                raise ConfigUnsupportedError(
                    "multiple audio backends are not supported by this QEMU",
                    context={"count": len(backends), "capability": Cap.AUDIODEV.value},
                )
            if backends or vm.devices_of(Sound):
                plan.env.update(audio_environment(backends[0] if backends else None))
        case _:
            raise EnumRangeError.for_value("audio mode", mode)
    logger.debug("Audio plan", extra={"mode": mode.value, "backends": len(backends)})
    return plan


# ============================================================================
# Sound devices
# ============================================================================

_SOUND_DRIVERS = {
    "ich6": "intel-hda",
    "ich7": "intel-hda",
    "ich9": "ich9-intel-hda",
    "ac97": "AC97",
    "es1370": "ES1370",
    "sb16": "sb16",
    "usb": "usb-audio",
}

_HDA_MODELS = ("ich6", "ich7", "ich9")


def _audiodev_ref(sound: Sound, mode: AudioMode) -> PropRef | None:
    if mode != AudioMode.AUDIODEV:
        return None
    return PropRef(audio_alias(sound.audio_id) if sound.audio_id is not None else constants.DEFAULT_AUDIO_ALIAS)


def _codec_fragment(sound: Sound, codec: Codec, index: int, caps: CapabilitySet, mode: AudioMode) -> Fragment:
    alias = require_alias(sound)
    tree = PropTree.device(f"hda-{codec.type}")
    tree.add("id", f"{alias}-codec{index}").add("bus", f"{alias}.0").add("cad", codec.cad)
    tree.add("audiodev", _audiodev_ref(sound, mode))
    return Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(alias,))


def sound_fragments(sound: Sound, vm: VmDefinition, caps: CapabilitySet, mode: AudioMode) -> list[Fragment]:
    """Controller device then any HDA codecs on its bus."""
    if sound.model == "pcspk":
        # Wired through -machine pcspk-audiodev.
        return []
    driver = _SOUND_DRIVERS.get(sound.model)
    if driver is None:
        raise EnumRangeError.for_value("sound model", sound.model)

    match sound.model:
        case "sb16":
            require_address(sound, (AddressKind.ISA, AddressKind.NONE), what=driver)
        case "usb":
            require_address(sound, (AddressKind.USB,), what=driver)
        case _:
            require_address(sound, (AddressKind.PCI,), what=driver)

    tree, bus = plain_device(driver, sound, vm)
    hda = sound.model in _HDA_MODELS
    if not hda:
        tree.add("audiodev", _audiodev_ref(sound, mode))
    finish_device(tree, sound, boot=False)
    out = [Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))]

    if hda:
        codecs = sound.codecs or (Codec(type="duplex", cad=0),)
        for index, codec in enumerate(codecs):
            out.append(_codec_fragment(sound, codec, index, caps, mode))
    elif sound.codecs:
        logger.debug("Ignoring codecs on non-HDA sound device", extra={"alias": device_label(sound)})
    return out
