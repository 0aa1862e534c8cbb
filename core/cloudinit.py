import io
from typing import Dict

import pycdlib

from core.templates import MetaDataParams, TemplateKind, UserDataParams, render

# NoCloud datasource looks for a filesystem with this label
CIDATA_VOLUME_IDENT = "cidata"


def generate_iso(files: Dict[str, bytes]) -> bytes:
    """
    Package ``files`` into a single ISO9660 image.

    File names are exposed through the Joliet and Rock Ridge extensions;
    the plain ISO9660 names are just sequence numbers, since names like
    ``meta-data`` are not valid there.
    """
    iso = pycdlib.PyCdlib()
    iso.new(interchange_level=3, joliet=3, rock_ridge="1.09", vol_ident=CIDATA_VOLUME_IDENT)
    try:
        for i, (name, content) in enumerate(sorted(files.items())):
            iso.add_fp(
                io.BytesIO(content),
                len(content),
                f"/{i}.;1",
                rr_name=name,
                joliet_path=f"/{name}",
            )

        out = io.BytesIO()
        iso.write_fp(out)
        return out.getvalue()
    finally:
        iso.close()


def build_cidata(vm_name: str, ssh_public_keys) -> bytes:
    """Render meta-data and user-data for a VM and package them."""
    meta_data = render(TemplateKind.META_DATA, MetaDataParams(vm_name=vm_name))
    user_data = render(
        TemplateKind.USER_DATA,
        UserDataParams(vm_name=vm_name, ssh_public_keys=tuple(ssh_public_keys)),
    )
    return generate_iso(
        {
            "meta-data": meta_data.encode("utf-8"),
            "user-data": user_data.encode("utf-8"),
        }
    )
