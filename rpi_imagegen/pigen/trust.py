"""Repository trust bootstrapping for pi-gen's stage0.

pi-gen's `stage0/00-configure-apt/00-run.sh` assumes the chroot already
trusts the Debian archive signing keys. On some architecture/release
combinations it does not, and the failure only surfaces later as a package
verification error. This module prepends a remediation block to that script.

The remediation is an ordered ladder of rungs. Each rung pairs an attempt with
a "satisfied" predicate; inside the chroot a rung's attempt runs only while
its predicate fails, so a rung that already established trust short-circuits
everything after it:

1. keyring-package - install the newest debian-archive-keyring .deb
2. gpg-tool        - install gpg from direct .deb downloads if absent
3. fetch-keys      - fetch the release signing keys from keyservers
4. install-keys    - copy key material into /etc/apt/trusted.gpg.d/
5. mark-trusted    - last resort: [trusted=yes] (or deb822 `Trusted: yes`) on
                     the Debian entries only, recorded in a comment-only
                     audit file

The original script content is appended verbatim after the injected block.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from textwrap import dedent

from rpi_imagegen.config import BuildConfiguration
from rpi_imagegen.errors import PipelineError

logger = logging.getLogger(__name__)

TRUST_TARGET_SCRIPT = "stage0/00-configure-apt/00-run.sh"

BEGIN_MARKER = "# >>> rpi-imagegen trust bootstrap >>>"
END_MARKER = "# <<< rpi-imagegen trust bootstrap <<<"
ORIGINAL_CONTENT_HEADER = "# Original script content follows"

TRUSTED_DIR = "/etc/apt/trusted.gpg.d"
SHARED_KEYRING_DIR = "/usr/share/keyrings"
APT_DIR = "/etc/apt"
RELAXATION_NAME = "99trust-bootstrap"
RELAXATION_FILE = f"{APT_DIR}/apt.conf.d/{RELAXATION_NAME}"

POOL_MIRRORS = (
    "http://deb.debian.org/debian/pool/main",
    "http://ftp.debian.org/debian/pool/main",
    "http://security.debian.org/debian-security/pool/updates/main",
)

KEYSERVERS = ("keyserver.ubuntu.com", "keys.openpgp.org", "pgp.mit.edu")

TRUSTED_HOSTS = ("deb.debian.org", "security.debian.org", "ftp.debian.org")

# debian-archive-keyring versions to try, newest first
KEYRING_VERSIONS: dict[str, tuple[str, ...]] = {
    "bookworm": ("2023.4+deb12u1", "2023.4", "2023.3+deb12u2", "2023.3"),
    "bullseye": ("2021.1.1+deb11u1", "2021.1.1"),
}

# Archive, stable and security signing keys per release
RELEASE_KEY_IDS: dict[str, tuple[str, ...]] = {
    "bookworm": (
        "6ED0E7B82643E131",
        "78DBA3BC47EF2265",
        "F8D2585B8783D481",
        "54404762BBB6E853",
        "BDE6D2B9216EC7A8",
        "0E98404D386FA1D9",
    ),
    "bullseye": (
        "73A4F27B8DD47936",
        "A48449044AAD5C5D",
        "605C66F00D6C9793",
        "0E98404D386FA1D9",
        "6ED0E7B82643E131",
    ),
}

# gnupg and the libraries gpg needs, as pool paths; {arch} is filled in
GPG_PACKAGES: dict[str, tuple[str, ...]] = {
    "bookworm": (
        "g/gnupg2/gnupg_2.2.40-1.1_all.deb",
        "g/gnupg2/gpg_2.2.40-1.1+deb12u1_{arch}.deb",
        "liba/libassuan/libassuan0_2.5.5-5_{arch}.deb",
        "libk/libksba/libksba8_1.6.3-2_{arch}.deb",
        "n/npth/libnpth0_1.6-3_{arch}.deb",
    ),
    "bullseye": (
        "g/gnupg2/gnupg_2.2.27-2+deb11u2_all.deb",
        "g/gnupg2/gpg_2.2.27-2+deb11u2_{arch}.deb",
        "liba/libassuan/libassuan0_2.5.3-7.1_{arch}.deb",
        "libk/libksba/libksba8_1.5.0-3+deb11u2_{arch}.deb",
        "n/npth/libnpth0_1.6-3_{arch}.deb",
    ),
}


class TrustBootstrapError(PipelineError):
    """Raised when the trust bootstrap cannot be injected."""

    def __init__(self, message: str, code: str = "trust_bootstrap_error") -> None:
        super().__init__(message, code=code)


@dataclass(frozen=True)
class TrustRung:
    """One rung of the remediation ladder.

    Attributes:
        name: Identifier, used for the shell function names.
        description: Human-readable purpose, echoed in the build log.
        attempt: Shell body that tries to establish trust.
        satisfied: Shell body returning 0 when the attempt is unnecessary.
    """

    name: str
    description: str
    attempt: str
    satisfied: str

    @property
    def func_name(self) -> str:
        return self.name.replace("-", "_")


def release_key_ids(config: BuildConfiguration) -> tuple[str, ...]:
    """Signing key IDs for the configured release (TRUST_KEY_IDS wins)."""
    override = config.get_list("TRUST_KEY_IDS")
    if override:
        return tuple(override)
    release = config.get("RPI_OS_RELEASE") or ""
    keys = RELEASE_KEY_IDS.get(release, ())
    if not keys:
        logger.warning(
            "No signing keys known for release '%s'; keyserver fetch will be skipped",
            release,
        )
    return keys


def _indent(body: str, prefix: str = "    ") -> str:
    return "\n".join(prefix + line if line else line for line in body.splitlines())


def _quote_words(words: tuple[str, ...] | list[str]) -> str:
    return " ".join(shlex.quote(w) for w in words)


def render_trust_established(key_ids: tuple[str, ...]) -> str:
    """Shell function checking every key ID is visible in apt's trusted dir."""
    return dedent(
        f"""\
        TRUST_KEY_IDS={shlex.quote(" ".join(key_ids))}
        trust_established() {{
            command -v gpg >/dev/null 2>&1 || return 1
            [ -n "$TRUST_KEY_IDS" ] || return 1
            local keyring_args=""
            local keyring
            for keyring in {TRUSTED_DIR}/*.gpg; do
                [ -f "$keyring" ] && keyring_args="$keyring_args --keyring $keyring"
            done
            [ -n "$keyring_args" ] || return 1
            local tmp_home
            tmp_home="$(mktemp -d)"
            local key
            for key in $TRUST_KEY_IDS; do
                if ! GNUPGHOME="$tmp_home" gpg --batch --no-default-keyring $keyring_args \\
                        --list-keys "$key" >/dev/null 2>&1; then
                    rm -rf "$tmp_home"
                    return 1
                fi
            done
            rm -rf "$tmp_home"
            return 0
        }}
        """
    )


def _keyring_package_attempt(versions: tuple[str, ...]) -> str:
    return dedent(
        f"""\
        cd /tmp || return 1
        rm -f debian-archive-keyring_*.deb
        local version mirror deb
        for version in {_quote_words(versions)}; do
            deb="debian-archive-keyring_${{version}}_all.deb"
            for mirror in {_quote_words(POOL_MIRRORS)}; do
                echo "[TRUST]   Trying $mirror/d/debian-archive-keyring/$deb"
                if wget -q "$mirror/d/debian-archive-keyring/$deb"; then
                    if dpkg -i --force-all "$deb"; then
                        rm -f "$deb"
                        echo "[TRUST]   debian-archive-keyring $version installed"
                        return 0
                    fi
                    rm -f "$deb"
                fi
            done
        done
        echo "[TRUST]   Could not install any debian-archive-keyring package"
        return 1
        """
    )


def _gpg_tool_attempt(packages: tuple[str, ...], arch: str) -> str:
    pool_paths = [p.format(arch=arch) for p in packages]
    return dedent(
        f"""\
        local workdir
        workdir="$(mktemp -d)"
        cd "$workdir" || return 1
        local path mirror
        for path in {_quote_words(pool_paths)}; do
            for mirror in {_quote_words(POOL_MIRRORS)}; do
                wget -q "$mirror/$path" && break
            done
        done
        if ls ./*.deb >/dev/null 2>&1; then
            dpkg -i ./*.deb || echo "[TRUST]   dpkg reported errors installing gnupg"
        fi
        cd /tmp && rm -rf "$workdir"
        if ! command -v gpg >/dev/null 2>&1; then
            echo "[TRUST]   Direct download failed, trying apt-get with insecure repositories for gnupg only"
            apt-get update -o Acquire::AllowInsecureRepositories=true || true
            apt-get install -y --allow-unauthenticated gnupg || true
        fi
        command -v gpg >/dev/null 2>&1
        """
    )


def _fetch_keys_attempt() -> str:
    return dedent(
        f"""\
        if ! command -v gpg >/dev/null 2>&1; then
            echo "[TRUST]   gpg not available, relying on the keyring package"
            return 1
        fi
        [ -n "$TRUST_KEY_IDS" ] || {{ echo "[TRUST]   No signing keys configured"; return 1; }}
        mkdir -p {SHARED_KEYRING_DIR}
        local gnupg_home failed key server fetched
        gnupg_home="$(mktemp -d)"
        chmod 700 "$gnupg_home"
        failed=0
        for key in $TRUST_KEY_IDS; do
            fetched=0
            for server in {_quote_words(KEYSERVERS)}; do
                if GNUPGHOME="$gnupg_home" gpg --batch --keyserver "hkp://$server:80" --recv-keys "$key"; then
                    GNUPGHOME="$gnupg_home" gpg --batch --export "$key" > "{SHARED_KEYRING_DIR}/debian-trust-$key.gpg"
                    echo "[TRUST]     Key $key fetched from $server"
                    fetched=1
                    break
                fi
            done
            if [ "$fetched" -ne 1 ]; then
                echo "[TRUST]     WARNING: could not fetch key $key from any keyserver"
                failed=1
            fi
        done
        rm -rf "$gnupg_home"
        chmod 644 {SHARED_KEYRING_DIR}/*.gpg 2>/dev/null || true
        return "$failed"
        """
    )


def _install_keys_attempt() -> str:
    return dedent(
        f"""\
        mkdir -p {TRUSTED_DIR}
        local keyring copied=0
        for keyring in {SHARED_KEYRING_DIR}/debian-archive-keyring.gpg \\
                       {SHARED_KEYRING_DIR}/debian-archive-*.gpg \\
                       {SHARED_KEYRING_DIR}/debian-trust-*.gpg; do
            if [ -f "$keyring" ]; then
                cp "$keyring" {TRUSTED_DIR}/
                echo "[TRUST]   Copied $(basename "$keyring") to {TRUSTED_DIR}"
                copied=$((copied + 1))
            fi
        done
        chmod 644 {TRUSTED_DIR}/*.gpg 2>/dev/null || true
        [ "$copied" -gt 0 ]
        """
    )


def render_mark_function() -> str:
    """Shell function marking the Debian entries of the given source files.

    One-line entries get `[trusted=yes]` (merged into an existing option
    block), deb822 stanzas a `Trusted: yes` field after their `URIs:` line.
    Entries of any other host are left alone. Every marked entry is printed.
    Marking is idempotent.
    """
    hosts = "\\|".join(h.replace(".", "\\.") for h in TRUSTED_HOSTS)
    url = f"https\\?://\\({hosts}\\)"
    return dedent(
        f"""\
        mark_trusted_entries() {{
            local list
            for list in "$@"; do
                [ -f "$list" ] || continue
                case "$list" in
                    *.sources)
                        sed -i -e '\\#^URIs:.*{url}#{{n;/^Trusted: yes$/b' -e 'i Trusted: yes' -e '}}' "$list"
                        grep -h '^URIs:.*{url}' "$list" || true
                        ;;
                    *)
                        sed -i \\
                            -e '/trusted=yes/!s#^\\(deb\\|deb-src\\) \\[\\([^]]*\\)\\] \\({url}\\)#\\1 [\\2 trusted=yes] \\3#' \\
                            -e '/trusted=yes/!s#^\\(deb\\|deb-src\\) \\({url}\\)#\\1 [trusted=yes] \\2#' \\
                            "$list"
                        grep -h '^deb\\(-src\\)\\? \\[[^]]*trusted=yes[^]]*\\] {url}' "$list" || true
                        ;;
                esac
            done
        }}
        """
    )


def render_mark_trusted(apt_dir: str = APT_DIR) -> str:
    """Body of the last-resort rung: mark Debian entries under apt_dir.

    The relaxation file is a comment-only audit record of the marked entries.
    It sets no apt option, so nothing beyond those entries is relaxed.
    """
    sources = " ".join(
        f"{apt_dir}/{pattern}"
        for pattern in ("sources.list", "sources.list.d/*.list", "sources.list.d/*.sources")
    )
    return dedent(
        f"""\
        local patched
        patched="$(mark_trusted_entries {sources})"
        if [ -z "$patched" ]; then
            echo "[TRUST]   No Debian repository entries found to mark as trusted"
            return 1
        fi
        mkdir -p {apt_dir}/apt.conf.d
        {{
            echo "// Written by the rpi-imagegen trust bootstrap. The signing keys could"
            echo "// not be established, so only these entries are marked trusted:"
            echo "$patched" | sed 's#^#//   #'
        }} > {apt_dir}/apt.conf.d/{RELAXATION_NAME}
        echo "[TRUST]   WARNING: signature enforcement relaxed for these entries only:"
        echo "$patched" | sed 's#^#[TRUST]     #'
        return 0
        """
    )


def build_trust_ladder(config: BuildConfiguration) -> list[TrustRung]:
    """Build the ordered remediation ladder for the configured target."""
    release = config.get("RPI_OS_RELEASE") or ""
    arch = config.require("ARCHITECTURE")

    versions = KEYRING_VERSIONS.get(release) or KEYRING_VERSIONS["bookworm"]
    gpg_packages = GPG_PACKAGES.get(release) or GPG_PACKAGES["bookworm"]

    return [
        TrustRung(
            name="keyring-package",
            description="Install the latest debian-archive-keyring package",
            attempt=_keyring_package_attempt(versions),
            satisfied="trust_established",
        ),
        TrustRung(
            name="gpg-tool",
            description="Install gpg from direct package downloads",
            attempt=_gpg_tool_attempt(gpg_packages, arch),
            satisfied="trust_established || command -v gpg >/dev/null 2>&1",
        ),
        TrustRung(
            name="fetch-keys",
            description="Fetch release signing keys from keyservers",
            attempt=_fetch_keys_attempt(),
            satisfied="trust_established",
        ),
        TrustRung(
            name="install-keys",
            description=f"Copy key material into {TRUSTED_DIR}",
            attempt=_install_keys_attempt(),
            satisfied="trust_established",
        ),
        TrustRung(
            name="mark-trusted",
            description="Mark Debian entries [trusted=yes] (last resort)",
            attempt=render_mark_trusted(),
            satisfied="trust_established",
        ),
    ]


def render_ladder(ladder: list[TrustRung]) -> str:
    """Render rung functions followed by the short-circuit evaluation."""
    parts: list[str] = []
    for rung in ladder:
        parts.append(f"{rung.func_name}_satisfied() {{\n    {rung.satisfied}\n}}")
        parts.append(f"{rung.func_name}_attempt() {{\n{_indent(rung.attempt)}\n}}")

    total = len(ladder)
    for index, rung in enumerate(ladder, start=1):
        parts.append(
            dedent(
                f"""\
                echo "[TRUST] Step {index}/{total}: {rung.description}"
                if {rung.func_name}_satisfied; then
                    echo "[TRUST]   Trust already established, skipping {rung.name}"
                elif {rung.func_name}_attempt; then
                    echo "[TRUST]   {rung.name} succeeded"
                else
                    echo "[TRUST]   {rung.name} did not complete"
                fi"""
            )
        )
    return "\n\n".join(parts)


def render_trust_script(ladder: list[TrustRung], config: BuildConfiguration) -> str:
    """Render the chroot-side bash script for the whole ladder."""
    key_ids = release_key_ids(config)
    body = "\n\n".join(
        [
            "set +e",
            f"mkdir -p {SHARED_KEYRING_DIR} {TRUSTED_DIR}",
            render_trust_established(key_ids).rstrip(),
            render_mark_function().rstrip(),
            render_ladder(ladder),
            dedent(
                """\
                if trust_established; then
                    echo "[TRUST] Repository trust established"
                else
                    echo "[TRUST] WARNING: repository trust could not be verified"
                fi
                exit 0"""
            ),
        ]
    )
    return body + "\n"


def render_trust_revert(config: BuildConfiguration) -> str:
    """Chroot snippet removing the last-resort relaxation once keys work.

    Emitted at the start of the custom stage so the safety valve does not
    outlive the build steps that needed it.
    """
    key_ids = release_key_ids(config)
    return (
        render_trust_established(key_ids)
        + dedent(
            f"""\
            if [ -f {RELAXATION_FILE} ]; then
                if trust_established; then
                    echo "[TRUST] Signing keys verified, removing trust relaxation"
                    rm -f {RELAXATION_FILE}
                    for list in {APT_DIR}/sources.list {APT_DIR}/sources.list.d/*.list; do
                        if [ -f "$list" ]; then
                            sed -i -e 's# \\[trusted=yes\\]##' -e 's# trusted=yes\\]#]#' "$list"
                        fi
                    done
                    for list in {APT_DIR}/sources.list.d/*.sources; do
                        if [ -f "$list" ]; then
                            sed -i '/^Trusted: yes$/d' "$list"
                        fi
                    done
                else
                    echo "[TRUST] WARNING: trust relaxation still active ({RELAXATION_FILE})"
                fi
            fi
            """
        )
    )


def render_injection_block(config: BuildConfiguration) -> str:
    """Host-side block prepended to the upstream apt configuration script.

    The upstream script reinstalls the sources from its `files/` templates
    after this block. When the last-resort rung ran, the same marks are
    applied to those templates so they survive the reinstall.
    """
    chroot_script = render_trust_script(build_trust_ladder(config), config)
    return (
        f"{BEGIN_MARKER}\n"
        'echo "[TRUST] Establishing repository trust before apt configuration..."\n'
        "on_chroot << 'EOF_TRUST_BOOTSTRAP'\n"
        f"{chroot_script}"
        "EOF_TRUST_BOOTSTRAP\n"
        f"{render_mark_function()}"
        f'if [ -f "${{ROOTFS_DIR}}{RELAXATION_FILE}" ]; then\n'
        '    echo "[TRUST] Carrying trust marks into the source templates"\n'
        "    mark_trusted_entries files/*.list files/*.sources || true\n"
        "fi\n"
        f"{END_MARKER}\n"
    )


def _split_shebang(content: str) -> tuple[str, str]:
    if content.startswith("#!"):
        first, _, rest = content.partition("\n")
        return first, rest
    return "#!/bin/bash -e", content


def inject_trust_bootstrap(pigen_dir: Path, config: BuildConfiguration) -> Path:
    """Prepend the trust ladder to stage0's apt configuration script.

    A `.bak` copy of the pristine script is kept. Re-running restores the
    pristine content first, so injection happens exactly once.

    Args:
        pigen_dir: Root of the pi-gen checkout.
        config: Build configuration.

    Returns:
        Path to the patched script.

    Raises:
        TrustBootstrapError: If the upstream script does not exist.
    """
    script = pigen_dir / TRUST_TARGET_SCRIPT
    backup = script.with_name(script.name + ".bak")

    if not script.is_file():
        raise TrustBootstrapError(
            f"{TRUST_TARGET_SCRIPT} not found - cannot inject trust bootstrap",
            code="trust_target_missing",
        )

    current = script.read_text(encoding="utf-8")
    if BEGIN_MARKER in current:
        if backup.is_file():
            logger.info("Trust bootstrap already present, restoring pristine script")
            current = backup.read_text(encoding="utf-8")
        else:
            shebang, rest = _split_shebang(current)
            _, _, original = rest.partition(END_MARKER + "\n")
            original = original.removeprefix("\n").removeprefix(
                ORIGINAL_CONTENT_HEADER + "\n"
            )
            current = f"{shebang}\n{original}"
    backup.write_text(current, encoding="utf-8")

    shebang, original_body = _split_shebang(current)
    script.write_text(
        f"{shebang}\n\n"
        f"{render_injection_block(config)}\n"
        f"{ORIGINAL_CONTENT_HEADER}\n"
        f"{original_body}",
        encoding="utf-8",
    )
    script.chmod(0o755)

    logger.info("Trust bootstrap prepended to %s", TRUST_TARGET_SCRIPT)
    return script


__all__ = [
    "APT_DIR",
    "BEGIN_MARKER",
    "END_MARKER",
    "KEYRING_VERSIONS",
    "RELAXATION_FILE",
    "RELEASE_KEY_IDS",
    "TRUST_TARGET_SCRIPT",
    "TrustBootstrapError",
    "TrustRung",
    "build_trust_ladder",
    "inject_trust_bootstrap",
    "release_key_ids",
    "render_injection_block",
    "render_ladder",
    "render_mark_function",
    "render_mark_trusted",
    "render_trust_revert",
    "render_trust_script",
]
