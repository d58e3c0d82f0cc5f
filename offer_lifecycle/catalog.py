"""Fixed procedure catalog and the enumerated offer labels."""

PROCEDURE_CATEGORIES: dict[str, tuple[str, ...]] = {
    "medikal_estetik": (
        "prp", "mezoterapi", "skinbooster_somon_dna", "ip_aski", "gidi_eritme_enjeksiyon",
    ),
    "cilt_dermatoloji": (
        "lazer_epilasyon", "karbon_peeling", "hydrafacial", "kimyasal_peeling", "fraksiyonel_lazer",
        "leke_tedavisi_protokolu", "akne_tedavisi_protokolu", "akne_izi_skar", "ben_sigil_et_beni",
        "catlak_tedavisi", "selulit_tedavisi", "kilcal_damar_tedavisi", "cilt_sikilastirma_hifu_rf",
    ),
    "sac_kas": (
        "sac_ekimi_fue", "sac_ekimi_dhi", "sakal_ekimi", "kas_ekimi", "sac_prp", "sac_mezoterapisi",
        "protez_sac", "sac_boyama",
    ),
    "dis": (
        "dis_beyazlatma", "dis_implant", "zirkonyum_kaplama", "lamina_veneer", "gulus_tasarimi",
        "ortodonti_seffaf_plak", "dis_eti_estetigi", "kanal_tedavisi", "kompozit_dolgu",
    ),
    "yuz_cerrahi": (
        "burun_estetigi_rinoplasti", "revizyon_rinoplasti", "goz_kapagi_estetigi", "yuz_germe_facelift",
        "boyun_germe", "kas_kaldirma", "bisektomi", "cene_estetigi", "kulak_estetigi_otoplasti",
    ),
    "gogus_cerrahi": (
        "gogus_buyutme", "gogus_diklestirme", "gogus_kucultme", "jinekomasti",
    ),
    "vucut_cerrahi": (
        "liposuction", "hd_liposuction", "abdominoplasti", "kol_germe", "bacak_estetigi",
        "basen_estetigi", "kalca_bbl", "mommy_makeover", "full_body_makeover", "boy_uzatma",
    ),
    "ameliyatsiz_incelme": (
        "soguk_lipoliz", "bolgesel_incelme_rf", "lenf_drenaj_masaji", "medikal_spa_kur",
    ),
    "kadin_sagligi": (
        "vajinal_estetik_labioplasti", "vajinal_sikilastirma",
    ),
    "erkek_sagligi": (
        "penil_filler", "penis_uzatma",
    ),
}

PROCEDURE_KEYS = frozenset(key for keys in PROCEDURE_CATEGORIES.values() for key in keys)

DURATION_LABELS = ("1-2 hours", "2-3 hours", "3-4 hours", "4-6 hours", "6-8 hours", "Full day")
HOSPITALIZATION_LABELS = ("None", "1 night", "2 nights", "3 nights", "4-5 nights", "1 week")


def is_known_procedure(procedure_key: str) -> bool:
    return procedure_key in PROCEDURE_KEYS
