"""Pytest configuration and fixtures for aidl_reverser tests"""

import pytest
import tempfile
import shutil
from pathlib import Path
import sys

# Add src to path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


THROWS_REMOTE = """    .annotation system Ldalvik/annotation/Throws;
        value = {
            Landroid/os/RemoteException;
        }
    .end annotation
"""


def smali_method(signature, remote=True):
    """Build an abstract smali method, optionally declaring RemoteException."""
    body = THROWS_REMOTE if remote else ''
    return f'.method public abstract {signature}\n{body}.end method\n'


def write_smali(root, binary_name, content):
    """Write a smali class under root, laid out by package like baksmali does."""
    path = Path(root, *binary_name.split('.')).with_suffix('.smali')
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing"""
    temp = tempfile.mkdtemp()
    yield Path(temp)
    shutil.rmtree(temp, ignore_errors=True)


@pytest.fixture
def power_manager_smali():
    """Sample AIDL interface as baksmali prints it"""
    return (
        '.class public interface abstract Landroid/os/IPowerManager;\n'
        '.super Ljava/lang/Object;\n'
        '.source "IPowerManager.java"\n\n'
        '# interfaces\n'
        '.implements Landroid/os/IInterface;\n\n\n'
        '# virtual methods\n'
        + smali_method('acquireWakeLock(Landroid/os/IBinder;ILjava/lang/String;Landroid/os/WorkSource;)V')
        + smali_method('goToSleep(JII)V')
        + smali_method('isScreenOn()Z')
        + smali_method('getBrightnessInfo(Landroid/content/ComponentName;)Landroid/hardware/display/BrightnessInfo;')
        + smali_method('setListeners([Landroid/content/ComponentName;Ljava/util/List;)V')
        + smali_method('localHelper()I', remote=False)
        + smali_method('wakeUp(JLandroid/content/ComponentName;)V')
    )


@pytest.fixture
def power_manager_stub_smali():
    """Sample Stub class carrying the transaction codes"""
    return """.class public abstract Landroid/os/IPowerManager$Stub;
.super Landroid/os/Binder;
.source "IPowerManager.java"

# interfaces
.implements Landroid/os/IPowerManager;


# static fields
.field private static final DESCRIPTOR:Ljava/lang/String; = "android.os.IPowerManager"

.field static final TRANSACTION_acquireWakeLock:I = 0x1

.field static final TRANSACTION_isScreenOn:I = 0x3

.field static final TRANSACTION_goToSleep:I = 0x2

.field static final TRANSACTION_getBrightnessInfo:I = 0x4

.field static final TRANSACTION_setListeners:I = 0x5

.field static final TRANSACTION_localHelper:I = 0x6

.field static final TRANSACTION_removedMethod:I = 0x7

.field static final TRANSACTION_wakeUp:I = 0x8

.field static final TRANSACTION_notConstant:I

.field public static final MAX_BRIGHTNESS:I = 0xff

.field private mRemote:Landroid/os/IBinder;


# direct methods
.method public constructor <init>()V
    .registers 2
    invoke-direct {p0}, Landroid/os/Binder;-><init>()V
    return-void
.end method
"""


@pytest.fixture
def activity_manager_smali():
    """Old-style IActivityManager: codes declared on the interface itself"""
    return (
        '.class public interface abstract Landroid/app/IActivityManager;\n'
        '.super Ljava/lang/Object;\n'
        '.implements Landroid/os/IInterface;\n\n'
        '# static fields\n'
        '.field public static final CLEAR_APP_DATA_TRANSACTION:I = 0x4e\n'
        '.field public static final START_ACTIVITY_TRANSACTION:I = 0x3\n'
        '.field public static final GET_DEVICE_CONFIGURATION_TRANSACTION:I = 0x54\n'
        '.field public static final START_BACKUP_AGENT_TRANSACTION:I = 0x5a\n'
        '.field public static final descriptor:Ljava/lang/String; = "android.app.IActivityManager"\n\n'
        '# virtual methods\n'
        + smali_method('clearApplicationUserData(Ljava/lang/String;Landroid/content/pm/IPackageDataObserver;I)Z')
        + smali_method('startActivity(Landroid/app/IApplicationThread;Ljava/lang/String;Landroid/content/Intent;)I')
        + smali_method('getDeviceConfigurationInfo()Landroid/content/pm/ConfigurationInfo;')
        + smali_method('bindBackupAgent(Landroid/content/pm/ApplicationInfo;I)Z')
    )


@pytest.fixture
def service_list_text():
    """Output of `adb shell service list`"""
    return (
        'Found 5 services:\n'
        '0\tactivity: [android.app.IActivityManager]\n'
        '1\tpower: [android.os.IPowerManager]\n'
        '2\tpower_short: [IPowerManager]\n'
        '3\tSurfaceFlinger: [android.ui.ISurfaceComposer]\n'
        '4\tDockObserver: []\n'
    )


@pytest.fixture
def smali_root(temp_dir, power_manager_smali, power_manager_stub_smali, activity_manager_smali):
    """A smali tree holding the sample framework classes"""
    root = temp_dir / 'smali'
    write_smali(root, 'android.os.IPowerManager', power_manager_smali)
    write_smali(root, 'android.os.IPowerManager$Stub', power_manager_stub_smali)
    write_smali(root, 'android.app.IActivityManager', activity_manager_smali)
    return root


@pytest.fixture
def registry(service_list_text):
    import aidl_sources
    return aidl_sources.ServiceListRegistry.from_text(service_list_text)


@pytest.fixture
def introspector(smali_root):
    import aidl_sources
    return aidl_sources.SmaliTypeIntrospector([smali_root])
