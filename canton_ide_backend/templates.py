from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional


@dataclass(frozen=True)
class TemplateInfo:
    id: str
    name: str
    description: str
    category: str


def _manifest(project: str) -> str:
    return f"""sdk-version: 3.4.0
name: {project}
version: 1.0.0
source: daml
dependencies:
  - daml-prim
  - daml-stdlib
build-options:
  - --target=3.4"""


_TOKEN_BASIC = """module Token where

import Daml.Script

template Token
  with
    issuer : Party
    owner : Party
    symbol : Text
    amount : Decimal
  where
    signatory issuer
    observer owner

    ensure amount > 0.0

    choice Transfer : ContractId Token
      with
        newOwner : Party
      controller owner
      do
        create this with owner = newOwner

setup : Script ()
setup = script do
  alice <- allocatePartyWithHint "Alice" (PartyIdHint "Alice")
  bob <- allocatePartyWithHint "Bob" (PartyIdHint "Bob")

  token <- submit alice do
    createCmd Token with
      issuer = alice
      owner = alice
      symbol = "ACME"
      amount = 100.0

  submit alice do
    exerciseCmd token Transfer with newOwner = bob

  return ()"""


_NFT_SIMPLE = """module NFT where

import Daml.Script

template NFT
  with
    issuer : Party
    owner : Party
    tokenId : Int
    name : Text
  where
    signatory issuer
    observer owner

    choice TransferNFT : ContractId NFT
      with
        newOwner : Party
      controller owner
      do
        create this with owner = newOwner

setup : Script ()
setup = script do
  creator <- allocatePartyWithHint "Creator" (PartyIdHint "Creator")
  alice <- allocatePartyWithHint "Alice" (PartyIdHint "Alice")

  nft <- submit creator do
    createCmd NFT with
      issuer = creator
      owner = alice
      tokenId = 1
      name = "Cool NFT #1"

  return ()"""


CATALOG: dict[str, TemplateInfo] = {
    "token-basic": TemplateInfo(
        id="token-basic",
        name="Basic Token",
        description="Simple fungible token with transfer functionality",
        category="tokens",
    ),
    "nft-simple": TemplateInfo(
        id="nft-simple",
        name="Simple NFT",
        description="Basic NFT implementation",
        category="nft",
    ),
}

_FILES: dict[str, dict[str, str]] = {
    "token-basic": {
        "daml.yaml": _manifest("token-basic"),
        "daml/Token.daml": _TOKEN_BASIC,
    },
    "nft-simple": {
        "daml.yaml": _manifest("nft-simple"),
        "daml/NFT.daml": _NFT_SIMPLE,
    },
}


def list_templates() -> list[dict[str, str]]:
    return [asdict(info) for info in CATALOG.values()]


def get_template_files(name: str) -> Optional[dict[str, str]]:
    """Return a copy of the template's file set, or None if unknown."""
    files = _FILES.get(name)
    return dict(files) if files is not None else None
