"""Tests for audio backends, the audiodev/environment choice and sound devices."""

import json
from collections.abc import Callable

import pytest

from qemu_argv.addresses import DeviceInfo, IsaAddress, PciAddress
from qemu_argv.audio import (
    AudioMode,
    audio_environment,
    audiodev_props,
    pc_speaker_audio_alias,
    plan_audio,
    select_audio_mode,
    sound_fragments,
)
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.devices import AudioBackend, AudioStream, Codec, Sound
from qemu_argv.domain import VmDefinition
from qemu_argv.emitter import TreeKind, emit_flat
from qemu_argv.exceptions import ConfigUnsupportedError

VmFactory = Callable[..., VmDefinition]


def hda(model: str = "ich9", **fields) -> Sound:
    fields.setdefault("info", DeviceInfo(alias="sound0", address=PciAddress(slot=27)))
    return Sound(model=model, **fields)


# ============================================================================
# Backends
# ============================================================================


class TestAudiodev:
    def test_pulseaudio_driver_name(self) -> None:
        backend = AudioBackend(
            type="pulseaudio",
            server="/run/user/1000/pulse/native",
            output=AudioStream(name="guest-out", mixing_engine=False),
        )
        assert audiodev_props(backend).to_json_value() == {
            "driver": "pa",
            "id": "audio1",
            "out": {"mixing-engine": False, "name": "guest-out"},
            "server": "/run/user/1000/pulse/native",
        }

    def test_flat_streams_are_dotted(self) -> None:
        backend = AudioBackend(id=2, type="alsa", input=AudioStream(dev="hw:0", voices=2), timer_period=10000)
        assert emit_flat(audiodev_props(backend), TreeKind.AUDIODEV) == (
            "alsa,id=audio2,in.voices=2,in.dev=hw:0,timer-period=10000"
        )

    def test_empty_stream_is_omitted(self) -> None:
        backend = AudioBackend(type="sdl", output=AudioStream(name="ignored"))
        assert "out" not in audiodev_props(backend)

    def test_file_path(self) -> None:
        tree = audiodev_props(AudioBackend(type="file", path="/tmp/guest.wav"))
        assert tree.get("path") == "/tmp/guest.wav"


class TestAudioEnvironment:
    def test_nothing_configured_is_silent(self) -> None:
        assert audio_environment(None) == {"QEMU_AUDIO_DRV": "none"}

    def test_pulseaudio(self) -> None:
        env = audio_environment(AudioBackend(type="pulseaudio", server="tcp:localhost"))
        assert env == {"QEMU_AUDIO_DRV": "pa", "QEMU_PA_SERVER": "tcp:localhost"}

    def test_alsa_devices(self) -> None:
        backend = AudioBackend(type="alsa", input=AudioStream(dev="hw:1"), output=AudioStream(dev="hw:0"))
        assert audio_environment(backend) == {
            "QEMU_AUDIO_DRV": "alsa",
            "QEMU_ALSA_DAC_DEV": "hw:0",
            "QEMU_ALSA_ADC_DEV": "hw:1",
        }

    def test_wav_file(self) -> None:
        env = audio_environment(AudioBackend(type="file", path="/tmp/out.wav"))
        assert env["QEMU_WAV_PATH"] == "/tmp/out.wav"


# ============================================================================
# Plan
# ============================================================================


class TestAudioPlan:
    """The pass uses audiodev objects or the environment, never both."""

    def test_mode_follows_capability(self, caps: CapabilitySet, legacy_caps: CapabilitySet) -> None:
        assert select_audio_mode(caps) == AudioMode.AUDIODEV
        assert select_audio_mode(legacy_caps) == AudioMode.ENVIRONMENT

    def test_audiodev_objects(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(AudioBackend(type="spice"), AudioBackend(id=2, type="none"))
        plan = plan_audio(vm, caps)
        assert plan.mode == AudioMode.AUDIODEV
        assert plan.env == {}
        assert [json.loads(f.value or "") for f in plan.fragments] == [
            {"driver": "spice", "id": "audio1"},
            {"driver": "none", "id": "audio2"},
        ]
        assert [f.flag for f in plan.fragments] == ["-audiodev", "-audiodev"]

    def test_sound_without_backend_gets_silent_audiodev(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        plan = plan_audio(vm_factory(hda()), caps)
        assert [f.defines for f in plan.fragments] == [("audio1",)]
        assert json.loads(plan.fragments[0].value or "") == {"driver": "none", "id": "audio1"}

    def test_no_audio_at_all(self, vm: VmDefinition, caps: CapabilitySet, legacy_caps: CapabilitySet) -> None:
        assert plan_audio(vm, caps).fragments == []
        legacy = plan_audio(vm, legacy_caps)
        assert legacy.fragments == []
        assert legacy.env == {}

    def test_environment_mode(self, vm_factory: VmFactory, legacy_caps: CapabilitySet) -> None:
        vm = vm_factory(hda(), AudioBackend(type="pulseaudio"))
        plan = plan_audio(vm, legacy_caps)
        assert plan.mode == AudioMode.ENVIRONMENT
        assert plan.fragments == []
        assert plan.env == {"QEMU_AUDIO_DRV": "pa"}

    def test_environment_mode_sound_only(self, vm_factory: VmFactory, legacy_caps: CapabilitySet) -> None:
        assert plan_audio(vm_factory(hda()), legacy_caps).env == {"QEMU_AUDIO_DRV": "none"}

    def test_environment_mode_single_backend(self, vm_factory: VmFactory, legacy_caps: CapabilitySet) -> None:
        vm = vm_factory(AudioBackend(type="alsa"), AudioBackend(id=2, type="pulseaudio"))
        with pytest.raises(ConfigUnsupportedError, match="multiple audio backends"):
            plan_audio(vm, legacy_caps)


# ============================================================================
# Sound devices
# ============================================================================


class TestSoundDevices:
    def test_hda_with_default_codec(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        controller, codec = sound_fragments(hda(audio_id=1), vm, caps, AudioMode.AUDIODEV)
        assert json.loads(controller.value or "") == {
            "driver": "ich9-intel-hda",
            "bus": "pcie.0",
            "addr": "0x1b",
            "id": "sound0",
        }
        assert json.loads(codec.value or "") == {
            "driver": "hda-duplex",
            "id": "sound0-codec0",
            "bus": "sound0.0",
            "cad": 0,
            "audiodev": "audio1",
        }
        assert codec.references == ("sound0", "audio1")

    def test_hda_codecs_flat_without_audiodev(self, vm: VmDefinition, legacy_caps: CapabilitySet) -> None:
        sound = hda("ich6", codecs=(Codec(type="output"), Codec(type="micro", cad=2)))
        frags = sound_fragments(sound, vm, legacy_caps, AudioMode.ENVIRONMENT)
        assert [f.value for f in frags] == [
            "intel-hda,bus=pcie.0,addr=0x1b,id=sound0",
            "hda-output,id=sound0-codec0,bus=sound0.0",
            "hda-micro,id=sound0-codec1,bus=sound0.0,cad=2",
        ]

    def test_ac97_references_default_audiodev(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        [frag] = sound_fragments(hda("ac97"), vm, caps, AudioMode.AUDIODEV)
        assert json.loads(frag.value or "")["audiodev"] == "audio1"
        assert frag.references == ("pcie.0", "audio1")

    def test_sb16_on_isa(self, vm: VmDefinition, legacy_caps: CapabilitySet) -> None:
        sound = Sound(model="sb16", info=DeviceInfo(alias="sound1", address=IsaAddress(iobase=0x220, irq=5)))
        [frag] = sound_fragments(sound, vm, legacy_caps, AudioMode.ENVIRONMENT)
        assert frag.value == "sb16,iobase=0x220,irq=5,id=sound1"

    def test_usb_audio_needs_usb_address(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        with pytest.raises(ConfigUnsupportedError, match="not supported for usb-audio device"):
            sound_fragments(hda("usb"), vm, caps, AudioMode.AUDIODEV)

    def test_pc_speaker_is_a_machine_property(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        speaker = Sound(model="pcspk", audio_id=2)
        vm = vm_factory(speaker)
        assert sound_fragments(speaker, vm, caps, AudioMode.AUDIODEV) == []
        assert pc_speaker_audio_alias(vm) == "audio2"
        assert pc_speaker_audio_alias(vm_factory(Sound(model="pcspk"))) == "audio1"

    def test_audiodev_capability_gates_mode(self, caps: CapabilitySet) -> None:
        assert select_audio_mode(caps.without_flags(Cap.AUDIODEV)) == AudioMode.ENVIRONMENT
